"""
Resource reaper for expired provisional uploads.

``reap_expired`` drains pending resources whose deadline has passed in
bounded batches. Each item's blob is deleted best-effort and its row is
deleted in its own transaction, so one bad item never blocks the rest of
the batch. ``purge_expired`` is the slower secondary sweep over rows that
were already marked expired.
"""

import logging
import time
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from atelier.core.config import Settings, get_settings
from atelier.core.database import get_db_session
from atelier.integrations.storage_client import StorageClient, get_storage_client
from atelier.models import ProvisionalResource, ProvisionalResourceStatus
from atelier.models.base import utcnow

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractContextManager[Session]]
ProgressCallback = Callable[[float, dict[str, Any]], None]

DEFAULT_BATCH_SIZE = 50


@dataclass
class ReapResult:
    """Totals from one reaper run."""

    total_cleaned: int
    failed: int
    batches: int
    completed_at: datetime
    blob_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cleaned": self.total_cleaned,
            "failed": self.failed,
            "batches": self.batches,
            "blob_failures": self.blob_failures,
            "completed_at": self.completed_at.isoformat(),
        }


class ResourceReaper:
    """
    Deletes provisional resources that were never committed.

    Example:
        ```python
        reaper = ResourceReaper()
        result = reaper.reap_expired(batch_size=100)
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope = get_db_session,
        storage: StorageClient | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        pause_seconds: float = 0.0,
    ) -> None:
        """
        Initialize the reaper.

        Args:
            session_scope: Context manager factory yielding one transaction
            storage: Storage client (created on first use)
            settings: Optional settings instance
            clock: Returns the current aware UTC time
            pause_seconds: Sleep between full batches to spread database load
        """
        self._session_scope = session_scope
        self._settings = settings or get_settings()
        self._storage = storage
        self._clock = clock
        self._pause_seconds = pause_seconds

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage_client(self._settings)
        return self._storage

    def reap_expired(
        self,
        batch_size: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ReapResult:
        """
        Delete every pending resource past its deadline.

        Args:
            batch_size: Rows fetched per batch (default 50)
            on_progress: Called after each batch with (percent, counters)

        Returns:
            ReapResult with cleaned and failed counts
        """
        batch_size = batch_size or DEFAULT_BATCH_SIZE
        now = self._clock()
        total_cleaned = 0
        failed = 0
        blob_failures = 0
        batches = 0
        # Rows whose delete failed stay pending; never refetch them this run
        skipped_ids: set[UUID] = set()

        logger.info(
            "Starting expired resource reap",
            extra={"batch_size": batch_size, "cutoff": now.isoformat()},
        )

        while True:
            batch = self._fetch_batch(now, batch_size, skipped_ids)
            if not batch:
                break
            batches += 1

            for resource_id, bucket, key in batch:
                if not self._delete_blob(resource_id, bucket, key):
                    blob_failures += 1

                if self._delete_row(resource_id):
                    total_cleaned += 1
                else:
                    failed += 1
                    skipped_ids.add(resource_id)

            progress = total_cleaned / (total_cleaned + len(batch)) * 100
            logger.info(
                "Reaped batch of expired resources",
                extra={
                    "batch": batches,
                    "batch_count": len(batch),
                    "total_cleaned": total_cleaned,
                    "failed": failed,
                    "progress": round(progress, 2),
                },
            )
            if on_progress is not None:
                on_progress(
                    progress,
                    {"batches": batches, "total_cleaned": total_cleaned, "failed": failed},
                )

            if len(batch) < batch_size:
                break
            if self._pause_seconds:
                time.sleep(self._pause_seconds)

        result = ReapResult(
            total_cleaned=total_cleaned,
            failed=failed,
            batches=batches,
            completed_at=self._clock(),
            blob_failures=blob_failures,
        )
        logger.info("Expired resource reap finished", extra=result.to_dict())
        return result

    def _fetch_batch(
        self,
        now: datetime,
        batch_size: int,
        skipped_ids: set[UUID],
    ) -> list[tuple[UUID, str, str]]:
        stmt = (
            select(ProvisionalResource)
            .where(
                ProvisionalResource.status == ProvisionalResourceStatus.PENDING,
                ProvisionalResource.expires_at <= now,
            )
            .order_by(ProvisionalResource.expires_at.asc())
            .limit(batch_size)
        )
        if skipped_ids:
            stmt = stmt.where(ProvisionalResource.id.not_in(list(skipped_ids)))

        with self._session_scope() as db:
            return [(r.id, r.storage_bucket, r.storage_key) for r in db.scalars(stmt)]

    def _delete_blob(self, resource_id: UUID, bucket: str, key: str) -> bool:
        try:
            self.storage.delete_file(bucket, key)
            return True
        except Exception as e:
            logger.warning(
                "Failed to delete expired resource blob",
                extra={
                    "warning": "storage_inconsistency",
                    "resource_id": str(resource_id),
                    "bucket": bucket,
                    "key": key,
                    "error": str(e),
                },
            )
            return False

    def _delete_row(self, resource_id: UUID) -> bool:
        try:
            with self._session_scope() as db:
                db.execute(
                    delete(ProvisionalResource).where(
                        ProvisionalResource.id == resource_id,
                        ProvisionalResource.status == ProvisionalResourceStatus.PENDING,
                    )
                )
            return True
        except Exception as e:
            logger.error(
                "Failed to delete expired resource row",
                extra={"resource_id": str(resource_id), "error": str(e)},
                exc_info=True,
            )
            return False

    def mark_overdue_expired(self) -> int:
        """
        Move pending resources past their deadline to expired.

        Returns:
            Number of rows updated
        """
        now = self._clock()
        with self._session_scope() as db:
            updated = db.execute(
                update(ProvisionalResource)
                .where(
                    ProvisionalResource.status == ProvisionalResourceStatus.PENDING,
                    ProvisionalResource.expires_at <= now,
                )
                .values(status=ProvisionalResourceStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            ).rowcount

        if updated:
            logger.info("Marked overdue resources expired", extra={"count": updated})
        return updated

    def purge_expired(self, retention_days: int | None = None) -> int:
        """
        Delete resources that have sat in expired state past retention.

        Args:
            retention_days: Age threshold on created_at (default from settings)

        Returns:
            Number of rows deleted
        """
        if retention_days is None:
            retention_days = self._settings.reaper_retention_days
        cutoff = self._clock() - timedelta(days=retention_days)

        with self._session_scope() as db:
            resources = db.scalars(
                select(ProvisionalResource).where(
                    ProvisionalResource.status == ProvisionalResourceStatus.EXPIRED,
                    ProvisionalResource.created_at <= cutoff,
                )
            ).all()
            targets = [(r.id, r.storage_bucket, r.storage_key) for r in resources]

        for resource_id, bucket, key in targets:
            self._delete_blob(resource_id, bucket, key)

        if not targets:
            return 0

        with self._session_scope() as db:
            deleted = db.execute(
                delete(ProvisionalResource).where(
                    ProvisionalResource.id.in_([t[0] for t in targets]),
                    ProvisionalResource.status == ProvisionalResourceStatus.EXPIRED,
                )
            ).rowcount

        logger.info(
            "Purged expired provisional resources",
            extra={"deleted": deleted, "retention_days": retention_days},
        )
        return deleted


__all__ = ["ResourceReaper", "ReapResult"]
