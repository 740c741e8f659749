"""
Job enqueueing with Redis-backed deduplication.

``enqueue`` is the single entry point services use to schedule work. When a
job id is given, a ``jobdedupe:{job_id}`` key is claimed with SET NX PX for
the delay plus a grace period, so a burst of identical reschedules collapses
into one pending task. The claim stores the Celery task id; the task holding
it releases the key as soon as it starts so the next reschedule can claim it
again.
"""

import logging
from typing import Any
from uuid import uuid4

import redis

from atelier.core.config import get_settings
from atelier.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

# Registered task names
GENERATE_ARTIFACT_TASK = "atelier.workers.tasks.generation.generate_artifact"
DERIVED_STAGE_TASK = "atelier.workers.tasks.derived_assets.run_derived_stage"
SYNC_NETWORK_TASK = "atelier.workers.tasks.network_sync.sync_network"

# Priorities; lower numbers are consumed first
PRIORITY_USER = 1
PRIORITY_BACKGROUND = 5

DEDUPE_KEY_PREFIX = "jobdedupe:"

# Compare-and-delete: drop the claim only if it still names this task
_RELEASE_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_redis: Any = None


def _get_redis() -> Any:
    """Lazy initialization of the dedupe Redis connection."""
    global _redis
    if _redis is None:
        try:
            client = redis.from_url(get_settings().redis_url, decode_responses=True)
            client.ping()
            _redis = client
        except redis.RedisError as e:
            logger.warning(f"Failed to connect to Redis for job dedupe: {e}")
            return None
    return _redis


def reset_dedupe_client() -> None:
    """Drop the cached Redis connection (for testing)."""
    global _redis
    _redis = None


def dedupe_key(job_id: str) -> str:
    return f"{DEDUPE_KEY_PREFIX}{job_id}"


def _claim(job_id: str, task_id: str, delay_ms: int | None) -> bool:
    client = _get_redis()
    if client is None:
        # Fail open: duplicates are tolerated by every task
        logger.warning("Redis unavailable, enqueueing without dedupe", extra={"job_id": job_id})
        return True

    ttl_ms = (delay_ms or 0) + get_settings().dedupe_grace_seconds * 1000
    try:
        return bool(client.set(dedupe_key(job_id), task_id, nx=True, px=ttl_ms))
    except redis.RedisError as e:
        logger.warning(f"Dedupe claim failed, enqueueing anyway: {e}", extra={"job_id": job_id})
        return True


def release_dedupe(job_id: str | None, task_id: str | None) -> bool:
    """
    Release a dedupe claim so the same job id can be scheduled again.

    Only the task that holds the claim may release it. A redelivered copy of
    an older task must not free the slot held by a newer pending reschedule.

    Args:
        job_id: The job id passed to enqueue, or None (no-op)
        task_id: Celery id of the releasing task

    Returns:
        True if the claim was held by task_id and is now released
    """
    if not job_id or not task_id:
        return False

    client = _get_redis()
    if client is None:
        return False

    try:
        release = client.register_script(_RELEASE_IF_OWNER)
        released = bool(release(keys=[dedupe_key(job_id)], args=[task_id]))
    except redis.RedisError as e:
        # The claim still expires on its own after delay + grace
        logger.warning(f"Failed to release dedupe key: {e}", extra={"job_id": job_id})
        return False

    if not released:
        logger.info(
            "Dedupe claim held by another task, left in place",
            extra={"job_id": job_id, "task_id": task_id},
        )
    return released


def enqueue(
    queue_name: str,
    job_type: str,
    payload: dict[str, Any],
    job_id: str | None = None,
    delay_ms: int | None = None,
    priority: int | None = None,
) -> str | None:
    """
    Schedule a Celery task.

    Args:
        queue_name: Queue to publish on (generation, media, maintenance, sync)
        job_type: Registered task name
        payload: Task keyword arguments
        job_id: Deterministic id for deduplication
        delay_ms: Delay before the task becomes runnable
        priority: 0-9, lower is more urgent

    Returns:
        The Celery task id, or None when an identical job is already pending

    Example:
        ```python
        enqueue(
            QUEUE_SYNC,
            SYNC_NETWORK_TASK,
            {"connected_account_id": str(account.id)},
            job_id=f"sync-network-{account.id}",
            delay_ms=retry_after * 1000,
        )
        ```
    """
    task_id = str(uuid4())
    kwargs = dict(payload)

    if job_id:
        if not _claim(job_id, task_id, delay_ms):
            logger.info(
                "Duplicate job collapsed",
                extra={"job_id": job_id, "job_type": job_type, "queue": queue_name},
            )
            return None
        kwargs["dedupe_id"] = job_id

    options: dict[str, Any] = {"queue": queue_name, "task_id": task_id}
    if delay_ms:
        options["countdown"] = delay_ms / 1000
    if priority is not None:
        options["priority"] = priority

    try:
        result = celery_app.send_task(job_type, kwargs=kwargs, **options)
    except Exception:
        # The claim would otherwise block rescheduling until it expires
        release_dedupe(job_id, task_id)
        raise

    logger.info(
        "Job enqueued",
        extra={
            "task_id": result.id,
            "job_type": job_type,
            "queue": queue_name,
            "job_id": job_id,
            "delay_ms": delay_ms,
            "priority": priority,
        },
    )
    return result.id


__all__ = [
    "enqueue",
    "release_dedupe",
    "reset_dedupe_client",
    "dedupe_key",
    "GENERATE_ARTIFACT_TASK",
    "DERIVED_STAGE_TASK",
    "SYNC_NETWORK_TASK",
    "PRIORITY_USER",
    "PRIORITY_BACKGROUND",
]
