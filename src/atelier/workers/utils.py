"""
Helpers shared by the Celery tasks and the services they drive.

- Loading artifacts with row locks inside a ``get_db_session()`` block
- Normalizing ids that arrive as JSON strings
- Building the JSON result every task returns
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.core.exceptions import NotFoundError
from atelier.models import Artifact
from atelier.models.base import utcnow

logger = logging.getLogger(__name__)

# =============================================================================
# Query Helpers
# =============================================================================


def to_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def get_artifact(
    db: Session,
    artifact_id: UUID | str,
    for_update: bool = False,
) -> Artifact:
    """
    Fetch an artifact, optionally locking its row for the transaction.

    Args:
        db: Database session
        artifact_id: Artifact UUID or string
        for_update: Take a row lock (ignored by SQLite)

    Returns:
        The Artifact

    Raises:
        NotFoundError: If no artifact has this id
    """
    stmt = select(Artifact).where(Artifact.id == to_uuid(artifact_id))
    if for_update:
        stmt = stmt.with_for_update()

    artifact = db.scalars(stmt).first()
    if artifact is None:
        raise NotFoundError("Artifact", str(artifact_id))
    return artifact


# =============================================================================
# Result Formatting Helpers
# =============================================================================


def format_task_result(
    stage: str,
    artifact_id: str | None = None,
    success: bool = True,
    asset_ids: list[str] | None = None,
    cost_usd: float = 0.0,
    error: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build the JSON-serializable dict every task returns."""
    result: dict[str, Any] = {
        "stage": stage,
        "artifact_id": artifact_id,
        "success": success,
        "asset_ids": asset_ids or [],
        "cost_usd": cost_usd,
        "completed_at": utcnow().isoformat(),
    }
    if error:
        result["error"] = error
    result.update(extra)
    return result


__all__ = [
    "get_artifact",
    "to_uuid",
    "format_task_result",
]
