"""
Celery task for the artifact generation cycle.

The task is a thin shell around GenerationOrchestrator: it releases the
job's dedupe claim, runs one cycle and converts the outcome into the
standard task result. Errors that a retry cannot fix (missing rows,
illegal transitions, bad input) are returned as failed results; anything
else propagates so Celery retries with backoff.
"""

import logging
from typing import Any

from celery import shared_task

from atelier.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from atelier.services.generation import GenerationOrchestrator, GenerationRequest
from atelier.workers.queue import release_dedupe
from atelier.workers.utils import format_task_result

logger = logging.getLogger(__name__)

STAGE = "generation"


@shared_task(
    bind=True,
    name="atelier.workers.tasks.generation.generate_artifact",
    acks_late=True,
    reject_on_worker_lost=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    max_retries=3,
)
def generate_artifact(
    self,
    artifact_id: str,
    regenerate: bool = False,
    content_family: str | None = None,
    skip_audio: bool = False,
    skip_video: bool = False,
    dedupe_id: str | None = None,
) -> dict[str, Any]:
    """
    Generate (or regenerate) content for an artifact.

    Args:
        artifact_id: UUID of the artifact
        regenerate: Reset prior results before generating
        content_family: Strategy override ("story" or "monologue")
        skip_audio: Do not produce audio or video
        skip_video: Do not produce video
        dedupe_id: Dedupe job id claimed at enqueue time

    Returns:
        Result dict with:
        - stage: "generation"
        - artifact_id: Artifact UUID string
        - success: Whether the cycle completed
        - cost_usd / tokens_used: Usage of the cycle
        - generation_count: Cycle number
        - derived_task_id: Task id of the first derived stage, if enqueued
    """
    # A new job for this artifact may be scheduled from here on
    release_dedupe(dedupe_id, self.request.id)

    logger.info(
        f"Starting generation for artifact {artifact_id}",
        extra={
            "artifact_id": artifact_id,
            "regenerate": regenerate,
            "content_family": content_family,
            "celery_task_id": self.request.id,
        },
    )

    try:
        request = GenerationRequest.from_payload(
            {
                "artifact_id": artifact_id,
                "regenerate": regenerate,
                "content_family": content_family,
                "skip_audio": skip_audio,
                "skip_video": skip_video,
            }
        )
    except ValueError as e:
        logger.warning(
            f"Rejected generation payload: {e}",
            extra={"artifact_id": artifact_id, "error": str(e)},
        )
        return format_task_result(stage=STAGE, artifact_id=artifact_id, success=False, error=str(e))

    try:
        outcome = GenerationOrchestrator().generate(request)
    except (NotFoundError, InvalidTransitionError, ValidationError) as e:
        logger.error(
            f"Generation for artifact {artifact_id} cannot proceed: {e.message}",
            extra={"artifact_id": artifact_id, "error": e.message},
        )
        return format_task_result(stage=STAGE, artifact_id=artifact_id, success=False, error=e.message)

    result = format_task_result(
        stage=STAGE,
        artifact_id=outcome.artifact_id,
        success=not outcome.superseded,
        cost_usd=float(outcome.usage.cost_usd),
        tokens_used=outcome.usage.total_tokens,
        family=outcome.family,
        generation_count=outcome.generation_count,
        regenerated=outcome.regenerated,
        superseded=outcome.superseded,
        derived_task_id=outcome.derived_task_id,
        removed_blob_count=outcome.removed_blob_count,
    )
    if outcome.superseded:
        result["error"] = "superseded by a newer generation cycle"

    logger.info(
        f"Generation finished for artifact {artifact_id}",
        extra={
            "artifact_id": artifact_id,
            "generation_count": outcome.generation_count,
            "superseded": outcome.superseded,
            "cost_usd": result["cost_usd"],
        },
    )
    return result


__all__ = ["generate_artifact"]
