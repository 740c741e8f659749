"""
Derived-asset pipeline: text -> audio -> video.

Each stage applies to a completed artifact and produces at most one asset
of its kind. A stage:

- skips when its asset already exists, unless a reset is requested;
- on reset, deletes the existing record and its blob before producing a
  new one;
- raises PipelineError when the prior stage's asset is missing.

Network work (download, TTS, render, upload) happens between two short
transactions. A concurrent duplicate run that loses the race on the
(artifact_id, kind) unique constraint discards its own blob and reports
the stage as skipped. Stage failures never roll back earlier stages.
"""

import logging
import time
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atelier.core.config import Settings, get_settings
from atelier.core.database import get_db_session
from atelier.core.exceptions import PipelineError
from atelier.integrations.openai_client import OpenAIClient, get_openai_client
from atelier.integrations.render_client import (
    DEFAULT_FPS,
    FALLBACK_BACKGROUND,
    RenderClient,
    get_render_client,
)
from atelier.integrations.storage_client import StorageClient, UploadResult, get_storage_client
from atelier.models import Artifact, ArtifactStatus, DerivedAsset, DerivedAssetKind
from atelier.models.base import utcnow
from atelier.workers.utils import get_artifact, to_uuid

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractContextManager[Session]]

STAGE_ORDER = (DerivedAssetKind.TEXT, DerivedAssetKind.AUDIO, DerivedAssetKind.VIDEO)

# Stage each kind is produced from
STAGE_DEPENDENCIES: dict[DerivedAssetKind, DerivedAssetKind] = {
    DerivedAssetKind.AUDIO: DerivedAssetKind.TEXT,
    DerivedAssetKind.VIDEO: DerivedAssetKind.AUDIO,
}

# Silence appended after the narration in rendered videos
VIDEO_PADDING_SECONDS = 2.0

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"


def plan_stages(skip_audio: bool = False, skip_video: bool = False) -> tuple[DerivedAssetKind, ...]:
    """
    Ordered stages to run for the given skip flags.

    Text always runs. Video is chained from audio, so skipping audio skips
    video as well.
    """
    stages = [DerivedAssetKind.TEXT]
    if not skip_audio:
        stages.append(DerivedAssetKind.AUDIO)
        if not skip_video:
            stages.append(DerivedAssetKind.VIDEO)
    return tuple(stages)


def next_stage(
    current: DerivedAssetKind,
    skip_audio: bool = False,
    skip_video: bool = False,
) -> DerivedAssetKind | None:
    stages = plan_stages(skip_audio=skip_audio, skip_video=skip_video)
    if current not in stages:
        return None
    position = stages.index(current)
    return stages[position + 1] if position + 1 < len(stages) else None


def derived_stage_job_id(artifact_id: UUID | str, kind: DerivedAssetKind, generation: int) -> str:
    """Dedupe id for a stage job, scoped to one generation cycle."""
    return f"derived-{artifact_id}-{kind.value}-g{generation}"


def narrative_text(artifact: Artifact) -> str | None:
    """
    The text a derived pipeline narrates for an artifact.

    Monologues use their generated text; stories join their pages.
    """
    meta = artifact.artifact_meta or {}
    if meta.get("monologue_text"):
        return meta["monologue_text"]
    page_text = "\n\n".join(page.text for page in artifact.pages if page.text)
    return page_text or artifact.description


@dataclass
class StageOutcome:
    """Result of running one stage."""

    stage: str
    status: str
    artifact_id: str
    asset_id: str | None = None
    cost_usd: float = 0.0
    duration_seconds: float | None = None
    generation_time_seconds: float | None = None
    reason: str | None = None
    generation_count: int | None = None

    @property
    def skipped(self) -> bool:
        return self.status == STATUS_SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status,
            "artifact_id": self.artifact_id,
            "asset_id": self.asset_id,
            "cost_usd": self.cost_usd,
            "duration_seconds": self.duration_seconds,
            "generation_time_seconds": self.generation_time_seconds,
            "reason": self.reason,
            "generation_count": self.generation_count,
        }


@dataclass(frozen=True)
class _AssetRef:
    id: UUID
    bucket: str | None
    key: str | None
    duration_seconds: float | None


@dataclass(frozen=True)
class _StagePlan:
    """Detached snapshot of what a stage needs, taken in the prepare transaction."""

    artifact_id: UUID
    kind: DerivedAssetKind
    generation_count: int
    text: str | None
    dependency: _AssetRef | None
    source_image: tuple[str, str] | None
    stale_blob: tuple[str, str] | None

    def require_dependency(self) -> _AssetRef:
        if self.dependency is None:
            raise PipelineError(
                message=f"No upstream asset resolved for the {self.kind.value} stage",
                stage=self.kind.value,
                artifact_id=str(self.artifact_id),
            )
        return self.dependency


class DerivedAssetPipeline:
    """
    Produces derived assets for completed artifacts.

    Example:
        ```python
        pipeline = DerivedAssetPipeline()
        outcome = pipeline.run_stage(artifact_id, DerivedAssetKind.AUDIO)
        if outcome.skipped:
            print(outcome.reason)
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope = get_db_session,
        storage: StorageClient | None = None,
        openai_client: OpenAIClient | None = None,
        render_client: RenderClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._settings = settings or get_settings()
        self._storage = storage
        self._openai = openai_client
        self._render = render_client

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage_client(self._settings)
        return self._storage

    @property
    def openai(self) -> OpenAIClient:
        if self._openai is None:
            self._openai = get_openai_client(self._settings)
        return self._openai

    @property
    def render(self) -> RenderClient:
        if self._render is None:
            self._render = get_render_client(self._settings)
        return self._render

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def run_stage(
        self,
        artifact_id: UUID | str,
        kind: DerivedAssetKind | str,
        reset: bool = False,
    ) -> StageOutcome:
        """
        Run a single stage for an artifact.

        Args:
            artifact_id: Completed artifact to derive from
            kind: Stage to run
            reset: Replace an existing asset of this kind

        Returns:
            StageOutcome, completed or skipped

        Raises:
            NotFoundError: If the artifact does not exist
            PipelineError: If the stage's dependency is missing
            ExternalServiceError: If storage, TTS or rendering fails
        """
        artifact_id = to_uuid(artifact_id)
        kind = DerivedAssetKind(kind)

        logger.info(
            "Starting derived stage",
            extra={"artifact_id": str(artifact_id), "stage": kind.value, "reset": reset},
        )

        try:
            prepared = self._prepare(artifact_id, kind, reset)
        except PipelineError as e:
            if kind == DerivedAssetKind.VIDEO:
                self._record_video_failure(artifact_id, e)
            raise
        if isinstance(prepared, StageOutcome):
            return prepared

        if prepared.stale_blob:
            self._delete_blob(prepared.stale_blob, artifact_id, kind)

        handlers = {
            DerivedAssetKind.TEXT: self._produce_text,
            DerivedAssetKind.AUDIO: self._produce_audio,
            DerivedAssetKind.VIDEO: self._produce_video,
        }
        return handlers[kind](prepared)

    def run_all(
        self,
        artifact_id: UUID | str,
        reset: bool = False,
        skip_audio: bool = False,
        skip_video: bool = False,
    ) -> list[StageOutcome]:
        """
        Run every planned stage in order, in-process.

        A failing stage raises; stages that already finished stay committed.
        """
        outcomes: list[StageOutcome] = []
        for kind in plan_stages(skip_audio=skip_audio, skip_video=skip_video):
            outcome = self.run_stage(artifact_id, kind, reset=reset)
            outcomes.append(outcome)
            if outcome.reason == "artifact_not_completed":
                break
        return outcomes

    # -------------------------------------------------------------------------
    # Prepare
    # -------------------------------------------------------------------------

    def _prepare(
        self,
        artifact_id: UUID,
        kind: DerivedAssetKind,
        reset: bool,
    ) -> _StagePlan | StageOutcome:
        with self._session_scope() as db:
            artifact = get_artifact(db, artifact_id, for_update=True)

            if artifact.status != ArtifactStatus.COMPLETED:
                # A stale job from before a regeneration; the new cycle enqueues its own
                logger.info(
                    "Skipping derived stage, artifact not completed",
                    extra={
                        "artifact_id": str(artifact_id),
                        "stage": kind.value,
                        "status": artifact.status.value,
                    },
                )
                return StageOutcome(
                    stage=kind.value,
                    status=STATUS_SKIPPED,
                    artifact_id=str(artifact_id),
                    reason="artifact_not_completed",
                )

            assets = {asset.kind: asset for asset in artifact.derived_assets}
            existing = assets.get(kind)

            if existing is not None and not reset:
                logger.info(
                    "Derived asset already exists, skipping",
                    extra={
                        "artifact_id": str(artifact_id),
                        "stage": kind.value,
                        "asset_id": str(existing.id),
                    },
                )
                return StageOutcome(
                    stage=kind.value,
                    status=STATUS_SKIPPED,
                    artifact_id=str(artifact_id),
                    asset_id=str(existing.id),
                    reason="already_exists",
                    generation_count=artifact.generation_count,
                )

            dependency = self._resolve_dependency(artifact, kind, assets)
            text = narrative_text(artifact)
            if kind == DerivedAssetKind.TEXT and not text:
                raise PipelineError(
                    message="Artifact has no narrative text to materialize",
                    stage=kind.value,
                    artifact_id=str(artifact_id),
                )

            stale_blob = None
            if existing is not None:
                if existing.storage_bucket and existing.storage_key:
                    stale_blob = (existing.storage_bucket, existing.storage_key)
                db.delete(existing)
                if kind == DerivedAssetKind.VIDEO:
                    artifact.has_video = False
                    artifact.video_asset_id = None
                    artifact.video_generated_at = None
                logger.info(
                    "Reset existing derived asset",
                    extra={
                        "artifact_id": str(artifact_id),
                        "stage": kind.value,
                        "asset_id": str(existing.id),
                    },
                )

            return _StagePlan(
                artifact_id=artifact_id,
                kind=kind,
                generation_count=artifact.generation_count,
                text=text,
                dependency=dependency,
                source_image=self._source_image(artifact),
                stale_blob=stale_blob,
            )

    def _resolve_dependency(
        self,
        artifact: Artifact,
        kind: DerivedAssetKind,
        assets: dict[DerivedAssetKind, DerivedAsset],
    ) -> _AssetRef | None:
        required = STAGE_DEPENDENCIES.get(kind)
        if required is None:
            return None

        asset = assets.get(required)
        if asset is None or not asset.storage_key:
            raise PipelineError(
                message=(
                    f"{required.value.capitalize()} asset required for the {kind.value} stage; "
                    f"run the {required.value} stage first"
                ),
                stage=kind.value,
                artifact_id=str(artifact.id),
                details={"missing_dependency": required.value},
            )

        if kind == DerivedAssetKind.VIDEO and not asset.duration_seconds:
            raise PipelineError(
                message="Audio asset has no duration; reset the audio stage",
                stage=kind.value,
                artifact_id=str(artifact.id),
                details={"audio_asset_id": str(asset.id)},
            )

        return _AssetRef(
            id=asset.id,
            bucket=asset.storage_bucket,
            key=asset.storage_key,
            duration_seconds=asset.duration_seconds,
        )

    def _source_image(self, artifact: Artifact) -> tuple[str, str] | None:
        meta = artifact.input.input_meta if artifact.input else {}
        key = (meta or {}).get("image_storage_key")
        if not key:
            return None
        return meta.get("image_storage_bucket") or self.storage.default_assets_bucket, key

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _produce_text(self, plan: _StagePlan) -> StageOutcome:
        start_time = time.time()
        asset_id = uuid4()
        data = (plan.text or "").encode("utf-8")

        upload = self.storage.upload_artifact_asset(
            data=data,
            artifact_id=plan.artifact_id,
            kind=plan.kind.value,
            asset_id=asset_id,
            file_extension="txt",
            content_type="text/plain; charset=utf-8",
        )

        asset = self._build_asset(
            plan,
            asset_id,
            upload,
            source_asset_id=None,
            cost_usd=Decimal("0"),
            duration_seconds=None,
            generation_time_seconds=time.time() - start_time,
            provider="atelier",
            model=None,
            meta={"characters": len(plan.text or "")},
        )
        return self._record(plan, asset)

    def _produce_audio(self, plan: _StagePlan) -> StageOutcome:
        source = plan.require_dependency()
        start_time = time.time()

        text = self.storage.download_file(source.bucket, source.key).decode("utf-8")
        speech = self.openai.synthesize_speech(text)

        asset_id = uuid4()
        upload = self.storage.upload_artifact_asset(
            data=speech.audio,
            artifact_id=plan.artifact_id,
            kind=plan.kind.value,
            asset_id=asset_id,
            file_extension="mp3",
            content_type=speech.content_type,
        )

        asset = self._build_asset(
            plan,
            asset_id,
            upload,
            source_asset_id=source.id,
            cost_usd=speech.cost_usd,
            duration_seconds=float(speech.estimated_duration_seconds),
            generation_time_seconds=time.time() - start_time,
            provider=self.openai.provider,
            model=speech.model,
            meta={"voice": speech.voice, "characters": speech.characters},
        )
        return self._record(plan, asset)

    def _produce_video(self, plan: _StagePlan) -> StageOutcome:
        source = plan.require_dependency()
        start_time = time.time()

        try:
            audio_url = self.storage.presigned_url(source.bucket, source.key)
            image_url = None
            if plan.source_image:
                image_url = self.storage.presigned_url(*plan.source_image)

            duration = float(source.duration_seconds or 0) + VIDEO_PADDING_SECONDS
            job = self.render.submit_render(
                audio_url=audio_url,
                duration_seconds=duration,
                image_url=image_url,
                caption=plan.text,
                fps=DEFAULT_FPS,
            )
            video = self.render.render_and_download(job, fps=DEFAULT_FPS)

            asset_id = uuid4()
            upload = self.storage.upload_artifact_asset(
                data=video.video_data,
                artifact_id=plan.artifact_id,
                kind=plan.kind.value,
                asset_id=asset_id,
                file_extension="mp4",
                content_type=video.content_type,
            )

            asset = self._build_asset(
                plan,
                asset_id,
                upload,
                source_asset_id=source.id,
                cost_usd=video.cost_usd,
                duration_seconds=video.duration_seconds or duration,
                generation_time_seconds=time.time() - start_time,
                provider=self.render.provider,
                model=None,
                meta={
                    "render_id": video.render_id,
                    "fps": video.fps,
                    "source_audio_id": str(source.id),
                    "source_image_key": plan.source_image[1] if plan.source_image else None,
                    "background": None if plan.source_image else FALLBACK_BACKGROUND,
                },
            )
            return self._record(plan, asset)
        except Exception as e:
            logger.error(
                "Video stage failed",
                extra={"artifact_id": str(plan.artifact_id), "error": str(e)},
                exc_info=True,
            )
            self._record_video_failure(plan.artifact_id, e)
            raise

    # -------------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------------

    def _build_asset(
        self,
        plan: _StagePlan,
        asset_id: UUID,
        upload: UploadResult,
        source_asset_id: UUID | None,
        cost_usd: Decimal,
        duration_seconds: float | None,
        generation_time_seconds: float,
        provider: str | None,
        model: str | None,
        meta: dict[str, Any],
    ) -> DerivedAsset:
        return DerivedAsset(
            id=asset_id,
            artifact_id=plan.artifact_id,
            kind=plan.kind,
            source_asset_id=source_asset_id,
            storage_bucket=upload.bucket,
            storage_key=upload.key,
            uri=upload.uri,
            mime_type=upload.content_type,
            file_size_bytes=upload.file_size_bytes,
            cost_usd=cost_usd,
            duration_seconds=duration_seconds,
            generation_time_seconds=round(generation_time_seconds, 3),
            provider=provider,
            model=model,
            asset_meta=meta,
        )

    def _record(self, plan: _StagePlan, asset: DerivedAsset) -> StageOutcome:
        """
        Insert the asset row, or discard the upload if another run won.

        Returns:
            completed outcome, or skipped when a duplicate run or a newer
            generation cycle got there first
        """
        blob = (asset.storage_bucket, asset.storage_key)
        skip_reason: str | None = None

        try:
            with self._session_scope() as db:
                artifact = get_artifact(db, plan.artifact_id, for_update=True)
                if (
                    artifact.status != ArtifactStatus.COMPLETED
                    or artifact.generation_count != plan.generation_count
                ):
                    skip_reason = "superseded"
                else:
                    db.add(asset)
                    if plan.kind == DerivedAssetKind.VIDEO:
                        artifact.has_video = True
                        artifact.video_asset_id = asset.id
                        artifact.video_generated_at = utcnow()
                        artifact.update_meta(
                            clear=("video_generation_error", "video_generation_failed_at")
                        )
                    db.flush()
        except IntegrityError:
            skip_reason = "already_exists"

        if skip_reason:
            logger.info(
                "Discarding derived asset from a duplicate or stale run",
                extra={
                    "artifact_id": str(plan.artifact_id),
                    "stage": plan.kind.value,
                    "reason": skip_reason,
                },
            )
            self._delete_blob(blob, plan.artifact_id, plan.kind)
            return StageOutcome(
                stage=plan.kind.value,
                status=STATUS_SKIPPED,
                artifact_id=str(plan.artifact_id),
                reason=skip_reason,
                generation_count=plan.generation_count,
            )

        logger.info(
            "Derived stage completed",
            extra={
                "artifact_id": str(plan.artifact_id),
                "stage": plan.kind.value,
                "asset_id": str(asset.id),
                "cost_usd": float(asset.cost_usd or 0),
                "duration_seconds": asset.duration_seconds,
            },
        )
        return StageOutcome(
            stage=plan.kind.value,
            status=STATUS_COMPLETED,
            artifact_id=str(plan.artifact_id),
            asset_id=str(asset.id),
            cost_usd=float(asset.cost_usd or 0),
            duration_seconds=asset.duration_seconds,
            generation_time_seconds=asset.generation_time_seconds,
            generation_count=plan.generation_count,
        )

    def _record_video_failure(self, artifact_id: UUID, error: Exception) -> None:
        try:
            with self._session_scope() as db:
                artifact = get_artifact(db, artifact_id, for_update=True)
                artifact.update_meta(
                    video_generation_error=str(error) or type(error).__name__,
                    video_generation_failed_at=utcnow().isoformat(),
                )
        except Exception:
            # The caller re-raises the original error; this one is only logged
            logger.error(
                "Could not record video failure",
                extra={"artifact_id": str(artifact_id)},
                exc_info=True,
            )

    def _delete_blob(
        self,
        blob: tuple[str | None, str | None],
        artifact_id: UUID,
        kind: DerivedAssetKind,
    ) -> None:
        bucket, key = blob
        if not bucket or not key:
            return
        try:
            self.storage.delete_file(bucket, key)
        except Exception as e:
            logger.warning(
                "Failed to delete derived asset blob",
                extra={
                    "warning": "storage_inconsistency",
                    "artifact_id": str(artifact_id),
                    "stage": kind.value,
                    "bucket": bucket,
                    "key": key,
                    "error": str(e),
                },
            )


__all__ = [
    "DerivedAssetPipeline",
    "StageOutcome",
    "STAGE_ORDER",
    "plan_stages",
    "next_stage",
    "derived_stage_job_id",
    "narrative_text",
]
