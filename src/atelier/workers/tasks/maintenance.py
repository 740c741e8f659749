"""
Maintenance tasks for Atelier.

This module contains tasks for:
- Reaping provisional uploads whose deadline passed without a commit
- Purging expired provisional uploads past the retention window
"""

import logging
from typing import Any

from celery import shared_task

from atelier.core.config import get_settings
from atelier.services.reaper import ResourceReaper
from atelier.workers.utils import format_task_result

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    name="atelier.workers.tasks.maintenance.reap_expired_resources",
    acks_late=True,
)
def reap_expired_resources(self, batch_size: int | None = None) -> dict[str, Any]:
    """
    Delete pending provisional resources past their deadline, in batches.

    Progress is reported through the task state while running. Rows the
    reaper could not delete are then moved to expired so the purge task
    retries them instead of every reaper run.

    Args:
        batch_size: Rows per batch (default from settings)

    Returns:
        Summary with total_cleaned, failed, batches and marked_expired
    """
    batch_size = batch_size or get_settings().reaper_batch_size
    logger.info("Starting provisional resource reaper", extra={"batch_size": batch_size})

    def report(progress: float, counters: dict[str, Any]) -> None:
        if self.request.id:
            self.update_state(
                state="PROGRESS",
                meta={"progress": round(progress, 2), **counters},
            )

    reaper = ResourceReaper()
    result = reaper.reap_expired(batch_size=batch_size, on_progress=report)
    marked = reaper.mark_overdue_expired() if result.failed else 0

    logger.info(
        f"Reaper complete: {result.total_cleaned} resources cleaned",
        extra={**result.to_dict(), "marked_expired": marked},
    )
    return format_task_result(
        stage="reap",
        success=True,
        marked_expired=marked,
        **result.to_dict(),
    )


@shared_task(
    bind=True,
    name="atelier.workers.tasks.maintenance.purge_expired_resources",
    acks_late=True,
)
def purge_expired_resources(self, retention_days: int | None = None) -> dict[str, Any]:
    """
    Delete expired provisional resources older than the retention window.

    Args:
        retention_days: Age threshold (default from settings)

    Returns:
        Summary with the number of rows deleted
    """
    logger.info("Starting expired resource purge", extra={"retention_days": retention_days})
    deleted = ResourceReaper().purge_expired(retention_days=retention_days)
    return format_task_result(stage="purge", success=True, deleted=deleted)


__all__ = ["reap_expired_resources", "purge_expired_resources"]
