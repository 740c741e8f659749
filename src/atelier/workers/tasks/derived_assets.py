"""
Celery task for derived-asset stages.

Each run produces one stage (text, audio or video) and then chains the
next planned stage as a new job, so a failing render never repeats the
TTS call that preceded it.
"""

import logging
from typing import Any

from celery import shared_task

from atelier.core.exceptions import NotFoundError, PipelineError
from atelier.models import DerivedAssetKind
from atelier.services.derived_assets import (
    DerivedAssetPipeline,
    StageOutcome,
    derived_stage_job_id,
    next_stage,
)
from atelier.workers.celery_app import QUEUE_MEDIA
from atelier.workers.queue import DERIVED_STAGE_TASK, PRIORITY_BACKGROUND, enqueue, release_dedupe
from atelier.workers.utils import format_task_result

logger = logging.getLogger(__name__)

# Skip reasons after which the chain stops
_TERMINAL_SKIPS = frozenset({"artifact_not_completed", "superseded"})


@shared_task(
    bind=True,
    name="atelier.workers.tasks.derived_assets.run_derived_stage",
    acks_late=True,
    reject_on_worker_lost=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    max_retries=3,
)
def run_derived_stage(
    self,
    artifact_id: str,
    stage: str,
    reset: bool = False,
    skip_audio: bool = False,
    skip_video: bool = False,
    dedupe_id: str | None = None,
) -> dict[str, Any]:
    """
    Produce one derived asset and schedule the next stage.

    Args:
        artifact_id: UUID of a completed artifact
        stage: "text", "audio" or "video"
        reset: Replace existing assets of this and later stages
        skip_audio: Stop the chain after text
        skip_video: Stop the chain after audio
        dedupe_id: Dedupe job id claimed at enqueue time

    Returns:
        Result dict with the stage outcome and the next stage's task id
    """
    release_dedupe(dedupe_id, self.request.id)

    logger.info(
        f"Starting {stage} stage for artifact {artifact_id}",
        extra={
            "artifact_id": artifact_id,
            "stage": stage,
            "reset": reset,
            "celery_task_id": self.request.id,
        },
    )

    try:
        kind = DerivedAssetKind(stage)
    except ValueError:
        return format_task_result(
            stage=stage,
            artifact_id=artifact_id,
            success=False,
            error=f"Unknown derived stage '{stage}'",
        )

    try:
        outcome = DerivedAssetPipeline().run_stage(artifact_id, kind, reset=reset)
    except (NotFoundError, PipelineError) as e:
        logger.error(
            f"{stage} stage for artifact {artifact_id} cannot proceed: {e.message}",
            extra={"artifact_id": artifact_id, "stage": stage, "error": e.message},
        )
        return format_task_result(stage=stage, artifact_id=artifact_id, success=False, error=e.message)

    next_task_id = _chain_next(outcome, kind, reset, skip_audio, skip_video)

    return format_task_result(
        stage=stage,
        artifact_id=outcome.artifact_id,
        success=True,
        asset_ids=[outcome.asset_id] if outcome.asset_id else [],
        cost_usd=outcome.cost_usd,
        duration_seconds=outcome.duration_seconds,
        status=outcome.status,
        reason=outcome.reason,
        next_task_id=next_task_id,
    )


def _chain_next(
    outcome: StageOutcome,
    kind: DerivedAssetKind,
    reset: bool,
    skip_audio: bool,
    skip_video: bool,
) -> str | None:
    if outcome.skipped and outcome.reason in _TERMINAL_SKIPS:
        logger.info(
            f"Derived chain stopped at {kind.value}",
            extra={"artifact_id": outcome.artifact_id, "reason": outcome.reason},
        )
        return None

    following = next_stage(kind, skip_audio=skip_audio, skip_video=skip_video)
    if following is None or outcome.generation_count is None:
        return None

    return enqueue(
        QUEUE_MEDIA,
        DERIVED_STAGE_TASK,
        {
            "artifact_id": outcome.artifact_id,
            "stage": following.value,
            "reset": reset,
            "skip_audio": skip_audio,
            "skip_video": skip_video,
        },
        job_id=derived_stage_job_id(outcome.artifact_id, following, outcome.generation_count),
        priority=PRIORITY_BACKGROUND,
    )


__all__ = ["run_derived_stage"]
