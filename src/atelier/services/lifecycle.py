"""
Artifact lifecycle transition rules.

    draft      -> pending      (submit)
    pending    -> generating   (dequeue)
    pending    -> failed       (rejected job: missing input, unknown family)
    generating -> completed    (success)
    generating -> failed       (exception)
    completed  -> generating   (regenerate, after atomic reset)
    failed     -> generating   (regenerate, after atomic reset)

generating -> generating is accepted so a redelivered job can pick up an
artifact whose previous worker died mid-cycle.
"""

import logging
from uuid import UUID

from atelier.core.exceptions import InvalidTransitionError
from atelier.models.enums import ArtifactStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ArtifactStatus, frozenset[ArtifactStatus]] = {
    ArtifactStatus.DRAFT: frozenset({ArtifactStatus.PENDING}),
    ArtifactStatus.PENDING: frozenset({ArtifactStatus.GENERATING, ArtifactStatus.FAILED}),
    ArtifactStatus.GENERATING: frozenset(
        {ArtifactStatus.GENERATING, ArtifactStatus.COMPLETED, ArtifactStatus.FAILED}
    ),
    ArtifactStatus.COMPLETED: frozenset({ArtifactStatus.GENERATING}),
    ArtifactStatus.FAILED: frozenset({ArtifactStatus.GENERATING}),
}

# Statuses a regeneration is expected to start from
REGENERABLE_STATUSES = frozenset({ArtifactStatus.COMPLETED, ArtifactStatus.FAILED})

# Statuses a rejected job must not leave an artifact in
IN_FLIGHT_STATUSES = frozenset({ArtifactStatus.PENDING, ArtifactStatus.GENERATING})


def can_transition(current: ArtifactStatus, target: ArtifactStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(
    current: ArtifactStatus,
    target: ArtifactStatus,
    artifact_id: UUID | str | None = None,
) -> None:
    """
    Validate a status change against the transition table.

    Args:
        current: Status the artifact is in now
        target: Status the caller wants to move to
        artifact_id: Artifact being transitioned, for error context

    Raises:
        InvalidTransitionError: If the move is not in the table
    """
    if can_transition(current, target):
        return

    logger.warning(
        "Rejected artifact status transition",
        extra={
            "artifact_id": str(artifact_id) if artifact_id else None,
            "current_status": current.value,
            "target_status": target.value,
        },
    )
    raise InvalidTransitionError(
        current=current.value,
        target=target.value,
        artifact_id=str(artifact_id) if artifact_id else None,
    )
