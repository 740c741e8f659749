"""
Celery task for rate-limited timeline sync.
"""

import logging
from typing import Any

from celery import shared_task

from atelier.core.exceptions import NotFoundError
from atelier.services.network_sync import NetworkSyncService
from atelier.workers.queue import release_dedupe
from atelier.workers.utils import format_task_result

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    name="atelier.workers.tasks.network_sync.sync_network",
    acks_late=True,
    reject_on_worker_lost=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    max_retries=3,
)
def sync_network(self, connected_account_id: str, dedupe_id: str | None = None) -> dict[str, Any]:
    """
    Sync one connected account's timeline.

    A rate-limited sync reschedules itself and still reports success.

    Args:
        connected_account_id: UUID of the connected account
        dedupe_id: Dedupe job id claimed at enqueue time

    Returns:
        Result dict with posts_synced, rescheduled and retry_after
    """
    # Release first so a rate-limited run can claim its own reschedule
    release_dedupe(dedupe_id, self.request.id)

    logger.info(
        f"Starting timeline sync for account {connected_account_id}",
        extra={"connected_account_id": connected_account_id, "celery_task_id": self.request.id},
    )

    try:
        result = NetworkSyncService().sync_account(connected_account_id)
    except NotFoundError as e:
        logger.warning(
            f"Timeline sync skipped: {e.message}",
            extra={"connected_account_id": connected_account_id},
        )
        return format_task_result(stage="network_sync", success=False, error=e.message)

    return format_task_result(stage="network_sync", success=True, **result.to_dict())
