"""
Generation orchestrator.

Top-level handler for a generation job. One call to
``GenerationOrchestrator.generate`` runs a full cycle:

1. Load and lock the artifact, validate it, and enter ``generating``. On
   regeneration the prior pages and derived assets are deleted and the
   result fields nulled in the same transaction.
2. Run the content strategy with no transaction open.
3. Persist the family payload and telemetry and mark the artifact
   completed, in one transaction.
4. Enqueue the derived-asset stages for families that have them.

Any failure after step 1 leaves the artifact ``failed`` with a readable
error and is re-raised for the task's retry policy. A job rejected in step 1
(missing input, unknown family) also fails a pending or generating artifact
before raising. This is the only code path that moves an artifact out of
``generating``.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from atelier.core.config import Settings, get_settings
from atelier.core.database import get_db_session
from atelier.core.exceptions import (
    AtelierException,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from atelier.integrations.openai_client import OpenAIClient
from atelier.integrations.storage_client import StorageClient, get_storage_client
from atelier.models import Artifact, ArtifactPage, ArtifactStatus, ContentFamily, DerivedAsset
from atelier.services.derived_assets import derived_stage_job_id, plan_stages
from atelier.services.lifecycle import IN_FLIGHT_STATUSES, REGENERABLE_STATUSES, ensure_transition
from atelier.services.results import GenerationResult, GenerationUsage
from atelier.services.strategies import ContentStrategy, GenerationContext, get_strategy
from atelier.workers.celery_app import QUEUE_MEDIA
from atelier.workers.queue import DERIVED_STAGE_TASK, PRIORITY_BACKGROUND, enqueue
from atelier.workers.utils import get_artifact, to_uuid

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractContextManager[Session]]


@dataclass
class GenerationRequest:
    """
    Parameters of a generation job.

    Attributes:
        artifact_id: Artifact to generate
        regenerate: Reset prior results before generating
        content_family: Strategy override; defaults to the artifact's family.
            Validated when the job starts so a bad value can fail the artifact.
        skip_audio: Do not produce the audio stage (also skips video)
        skip_video: Do not produce the video stage
    """

    artifact_id: UUID
    regenerate: bool = False
    content_family: ContentFamily | str | None = None
    skip_audio: bool = False
    skip_video: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GenerationRequest":
        return cls(
            artifact_id=to_uuid(payload["artifact_id"]),
            regenerate=bool(payload.get("regenerate", False)),
            content_family=payload.get("content_family") or None,
            skip_audio=bool(payload.get("skip_audio", False)),
            skip_video=bool(payload.get("skip_video", False)),
        )


def _resolve_family(value: ContentFamily | str) -> ContentFamily:
    try:
        return ContentFamily(value)
    except ValueError as e:
        raise ValidationError(
            message=f"Unknown content family '{value}'",
            field="content_family",
        ) from e


@dataclass
class GenerationOutcome:
    """Summary of a finished generation cycle."""

    artifact_id: str
    family: str
    generation_count: int
    regenerated: bool
    usage: GenerationUsage
    derived_task_id: str | None = None
    removed_blob_count: int = 0
    superseded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "family": self.family,
            "generation_count": self.generation_count,
            "regenerated": self.regenerated,
            "usage": self.usage.model_dump(mode="json"),
            "derived_task_id": self.derived_task_id,
            "removed_blob_count": self.removed_blob_count,
            "superseded": self.superseded,
        }


class GenerationOrchestrator:
    """
    Runs generation cycles for artifacts.

    Example:
        ```python
        orchestrator = GenerationOrchestrator()
        outcome = orchestrator.generate(
            GenerationRequest(artifact_id=artifact.id, regenerate=True)
        )
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope = get_db_session,
        storage: StorageClient | None = None,
        openai_client: OpenAIClient | None = None,
        settings: Settings | None = None,
        enqueue_fn: Callable[..., str | None] = enqueue,
        strategy_factory: Callable[..., ContentStrategy] = get_strategy,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            session_scope: Context manager factory yielding one transaction
            storage: Storage client for blob cleanup (created on first use)
            openai_client: OpenAI client handed to strategies
            settings: Optional settings instance
            enqueue_fn: Job enqueue function
            strategy_factory: Resolves a content family to a strategy
        """
        self._session_scope = session_scope
        self._storage = storage
        self._openai_client = openai_client
        self._settings = settings or get_settings()
        self._enqueue = enqueue_fn
        self._strategy_factory = strategy_factory

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage_client(self._settings)
        return self._storage

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def generate(self, request: GenerationRequest) -> GenerationOutcome:
        """
        Run one generation cycle.

        Args:
            request: Generation parameters

        Returns:
            GenerationOutcome describing the completed cycle

        Raises:
            NotFoundError: If the artifact or its input is missing
            InvalidTransitionError: If the artifact cannot enter generating
            ValidationError: If the content family is unknown; a pending or
                generating artifact is marked failed first
            Exception: Any strategy or persistence failure, after the
                artifact has been marked failed
        """
        artifact_id = request.artifact_id

        logger.info(
            "Starting generation",
            extra={
                "artifact_id": str(artifact_id),
                "regenerate": request.regenerate,
                "content_family": request.content_family,
            },
        )

        context, strategy, regenerated, removed_blobs = self._begin(request)

        if removed_blobs:
            self._delete_blobs(removed_blobs, artifact_id)

        try:
            result = strategy.generate(context)
            persisted = self._persist(context, strategy, result)
        except Exception as e:
            logger.error(
                "Generation failed",
                extra={
                    "artifact_id": str(artifact_id),
                    "family": context.family.value,
                    "generation_count": context.generation_count,
                    "error": str(e),
                },
                exc_info=True,
            )
            self._mark_failed(context, _error_message(e))
            raise

        outcome = GenerationOutcome(
            artifact_id=str(artifact_id),
            family=context.family.value,
            generation_count=context.generation_count,
            regenerated=regenerated,
            usage=result.usage,
            removed_blob_count=len(removed_blobs),
            superseded=not persisted,
        )

        if persisted and strategy.derived_stages:
            outcome.derived_task_id = self._enqueue_derived(context, request)

        logger.info(
            "Generation completed",
            extra={
                "artifact_id": str(artifact_id),
                "family": context.family.value,
                "generation_count": context.generation_count,
                "total_tokens": result.usage.total_tokens,
                "cost_usd": float(result.usage.cost_usd),
                "superseded": outcome.superseded,
            },
        )
        return outcome

    # -------------------------------------------------------------------------
    # Phase 1: enter generating
    # -------------------------------------------------------------------------

    def _begin(
        self,
        request: GenerationRequest,
    ) -> tuple[GenerationContext, ContentStrategy, bool, list[tuple[str, str]]]:
        rejected: AtelierException | None = None
        removed_blobs: list[tuple[str, str]] = []

        with self._session_scope() as db:
            artifact = get_artifact(db, request.artifact_id, for_update=True)

            if artifact.input is None:
                # Committed below so the artifact is not left pending forever
                rejected = NotFoundError("Input", str(artifact.input_id))
                artifact.mark_failed(f"Input {artifact.input_id} not found")
            else:
                try:
                    family = _resolve_family(request.content_family or artifact.content_family)
                    strategy = self._strategy_factory(
                        family,
                        openai_client=self._openai_client,
                        settings=self._settings,
                    )
                    regenerated, removed_blobs = self._enter_generating(
                        db, artifact, request.regenerate
                    )
                except (ValidationError, InvalidTransitionError) as e:
                    rejected = e
                    if artifact.status in IN_FLIGHT_STATUSES:
                        logger.warning(
                            "Generation rejected, marking artifact failed",
                            extra={
                                "artifact_id": str(artifact.id),
                                "status": artifact.status.value,
                                "error": e.message,
                            },
                        )
                        artifact.mark_failed(e.message)
                else:
                    artifact.content_family = family
                    context = GenerationContext(
                        artifact_id=artifact.id,
                        family=family,
                        prompt=artifact.input.prompt,
                        generation_count=artifact.generation_count,
                        input_meta=dict(artifact.input.input_meta or {}),
                    )

        if rejected is not None:
            raise rejected

        return context, strategy, regenerated, removed_blobs

    def _enter_generating(
        self, db: Session, artifact: Artifact, regenerate: bool
    ) -> tuple[bool, list[tuple[str, str]]]:
        """
        Move the artifact into generating, resetting it first when needed.

        Returns:
            Whether the cycle is a regeneration, and the removed blob locations
        """
        if not regenerate and artifact.status in REGENERABLE_STATUSES:
            logger.warning(
                "Initial generate on a finished artifact, running as regeneration",
                extra={
                    "warning": "precondition",
                    "artifact_id": str(artifact.id),
                    "status": artifact.status.value,
                },
            )
            regenerate = True

        if not regenerate:
            ensure_transition(artifact.status, ArtifactStatus.GENERATING, artifact.id)
            artifact.begin_cycle(regenerate=False)
            return False, []

        if artifact.status not in REGENERABLE_STATUSES:
            logger.warning(
                "Regenerating an artifact that is not completed or failed",
                extra={
                    "warning": "precondition",
                    "artifact_id": str(artifact.id),
                    "status": artifact.status.value,
                },
            )
        return True, self._reset(db, artifact)

    def _reset(self, db: Session, artifact: Artifact) -> list[tuple[str, str]]:
        """
        Delete prior children and null results, then enter generating.

        Runs inside the caller's transaction so no reader ever sees new
        content next to leftovers from an older cycle.

        Returns:
            (bucket, key) pairs of the removed derived-asset blobs
        """
        assets = db.scalars(
            select(DerivedAsset).where(DerivedAsset.artifact_id == artifact.id)
        ).all()
        removed = [
            (asset.storage_bucket, asset.storage_key)
            for asset in assets
            if asset.storage_bucket and asset.storage_key
        ]

        pages_deleted = db.execute(
            delete(ArtifactPage).where(ArtifactPage.artifact_id == artifact.id)
        ).rowcount
        assets_deleted = db.execute(
            delete(DerivedAsset).where(DerivedAsset.artifact_id == artifact.id)
        ).rowcount

        artifact.reset_results()
        artifact.begin_cycle(regenerate=True)
        db.flush()
        db.expire(artifact, ["pages", "derived_assets"])

        logger.info(
            "Artifact reset for regeneration",
            extra={
                "artifact_id": str(artifact.id),
                "pages_deleted": pages_deleted,
                "derived_assets_deleted": assets_deleted,
                "generation_count": artifact.generation_count,
            },
        )
        return removed

    def _delete_blobs(self, blobs: list[tuple[str, str]], artifact_id: UUID) -> None:
        for bucket, key in blobs:
            try:
                self.storage.delete_file(bucket, key)
            except Exception as e:
                logger.warning(
                    "Orphaned blob left after regeneration reset",
                    extra={
                        "warning": "storage_inconsistency",
                        "artifact_id": str(artifact_id),
                        "bucket": bucket,
                        "key": key,
                        "error": str(e),
                    },
                )

    # -------------------------------------------------------------------------
    # Phase 3: persist
    # -------------------------------------------------------------------------

    def _persist(
        self,
        context: GenerationContext,
        strategy: ContentStrategy,
        result: GenerationResult,
    ) -> bool:
        """
        Write the result and complete the artifact.

        Returns:
            False if a newer cycle took over while the strategy ran
        """
        with self._session_scope() as db:
            artifact = get_artifact(db, context.artifact_id, for_update=True)

            if artifact.generation_count != context.generation_count:
                logger.warning(
                    "Discarding result of a superseded generation cycle",
                    extra={
                        "warning": "precondition",
                        "artifact_id": str(artifact.id),
                        "cycle": context.generation_count,
                        "current_cycle": artifact.generation_count,
                    },
                )
                return False

            ensure_transition(artifact.status, ArtifactStatus.COMPLETED, artifact.id)
            strategy.persist(db, artifact, result)
            _apply_usage(artifact, result.usage)
            artifact.mark_completed()

        return True

    def _mark_failed(self, context: GenerationContext, error_message: str) -> None:
        try:
            with self._session_scope() as db:
                artifact = get_artifact(db, context.artifact_id, for_update=True)
                if artifact.generation_count != context.generation_count:
                    logger.warning(
                        "Not marking superseded cycle as failed",
                        extra={"artifact_id": str(artifact.id), "cycle": context.generation_count},
                    )
                    return
                artifact.mark_failed(error_message)
        except Exception:
            # The caller re-raises the original error; this one is only logged
            logger.error(
                "Could not record generation failure",
                extra={"artifact_id": str(context.artifact_id)},
                exc_info=True,
            )

    # -------------------------------------------------------------------------
    # Phase 4: derived assets
    # -------------------------------------------------------------------------

    def _enqueue_derived(
        self,
        context: GenerationContext,
        request: GenerationRequest,
    ) -> str | None:
        stages = plan_stages(skip_audio=request.skip_audio, skip_video=request.skip_video)
        if not stages:
            logger.info(
                "All derived stages skipped",
                extra={"artifact_id": str(context.artifact_id)},
            )
            return None

        first = stages[0]
        try:
            return self._enqueue(
                QUEUE_MEDIA,
                DERIVED_STAGE_TASK,
                {
                    "artifact_id": str(context.artifact_id),
                    "stage": first.value,
                    "skip_audio": request.skip_audio,
                    "skip_video": request.skip_video,
                },
                job_id=derived_stage_job_id(context.artifact_id, first, context.generation_count),
                delay_ms=self._settings.derived_asset_delay_seconds * 1000,
                priority=PRIORITY_BACKGROUND,
            )
        except Exception:
            # The artifact is already completed; derived assets can be re-run
            logger.error(
                "Failed to enqueue derived assets",
                extra={"artifact_id": str(context.artifact_id), "stage": first.value},
                exc_info=True,
            )
            return None


def _apply_usage(artifact: Artifact, usage: GenerationUsage) -> None:
    artifact.input_tokens = usage.input_tokens
    artifact.output_tokens = usage.output_tokens
    artifact.total_tokens = usage.total_tokens
    artifact.cost_usd = usage.cost_usd
    artifact.generation_time_seconds = usage.generation_time_seconds
    artifact.ai_model = usage.model
    artifact.ai_provider = usage.provider


def _error_message(error: Exception) -> str:
    if isinstance(error, AtelierException):
        return error.message
    return str(error) or type(error).__name__


__all__ = ["GenerationOrchestrator", "GenerationOutcome", "GenerationRequest"]
