"""
Submission service: creates generation requests and schedules them.

Rows are committed before the job is enqueued so the worker always finds
the artifact it was sent.
"""

import logging
from collections.abc import Callable
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from atelier.core.exceptions import NotFoundError, ValidationError
from atelier.models import Artifact, ArtifactStatus, ContentFamily, Input
from atelier.services.lifecycle import REGENERABLE_STATUSES, ensure_transition
from atelier.workers.celery_app import QUEUE_GENERATION
from atelier.workers.queue import GENERATE_ARTIFACT_TASK, PRIORITY_BACKGROUND, PRIORITY_USER, enqueue

logger = logging.getLogger(__name__)


def generation_job_id(artifact_id: UUID | str) -> str:
    return f"generate-{artifact_id}"


class SubmissionService:
    """
    Creates inputs and artifacts and enqueues their generation.

    Example:
        ```python
        service = SubmissionService(db)
        artifact = service.submit(
            prompt="A lighthouse keeper who befriends a storm",
            owner_id="user-1",
            content_family=ContentFamily.STORY,
        )
        ```
    """

    def __init__(
        self,
        db: Session,
        enqueue_fn: Callable[..., str | None] = enqueue,
    ) -> None:
        self._db = db
        self._enqueue = enqueue_fn

    def create_draft(
        self,
        prompt: str,
        owner_id: str | None = None,
        content_family: ContentFamily = ContentFamily.STORY,
        input_meta: dict[str, Any] | None = None,
    ) -> Artifact:
        """
        Create an Input and a draft Artifact without scheduling anything.

        Raises:
            ValidationError: If the prompt is empty
        """
        if not prompt or not prompt.strip():
            raise ValidationError(message="Prompt cannot be empty", field="prompt")

        source = Input(owner_id=owner_id, prompt=prompt.strip(), input_meta=input_meta or {})
        self._db.add(source)
        self._db.flush()

        artifact = Artifact(
            input_id=source.id,
            owner_id=owner_id,
            content_family=ContentFamily(content_family),
            status=ArtifactStatus.DRAFT,
            artifact_meta={"generation_count": 0},
        )
        self._db.add(artifact)
        self._db.flush()
        return artifact

    def submit(
        self,
        prompt: str,
        owner_id: str | None = None,
        content_family: ContentFamily = ContentFamily.STORY,
        input_meta: dict[str, Any] | None = None,
        skip_audio: bool = False,
        skip_video: bool = False,
    ) -> Artifact:
        """
        Create an artifact in pending state and enqueue its generation.

        Args:
            prompt: Source prompt
            owner_id: Requesting user
            content_family: Strategy to generate with
            input_meta: Extra input fields (page_count, title, image_storage_key)
            skip_audio: Do not produce audio (or video)
            skip_video: Do not produce video

        Returns:
            The pending Artifact
        """
        artifact = self.create_draft(prompt, owner_id, content_family, input_meta)
        return self.submit_draft(artifact.id, skip_audio=skip_audio, skip_video=skip_video)

    def submit_draft(
        self,
        artifact_id: UUID,
        skip_audio: bool = False,
        skip_video: bool = False,
    ) -> Artifact:
        """
        Move a draft to pending and enqueue its generation.

        Raises:
            NotFoundError: If the artifact does not exist
            InvalidTransitionError: If the artifact is not a draft
        """
        artifact = self._get(artifact_id)
        ensure_transition(artifact.status, ArtifactStatus.PENDING, artifact.id)
        artifact.status = ArtifactStatus.PENDING
        self._db.commit()

        task_id = self._enqueue(
            QUEUE_GENERATION,
            GENERATE_ARTIFACT_TASK,
            {
                "artifact_id": str(artifact.id),
                "regenerate": False,
                "skip_audio": skip_audio,
                "skip_video": skip_video,
            },
            job_id=generation_job_id(artifact.id),
            priority=PRIORITY_BACKGROUND,
        )

        logger.info(
            "Artifact submitted for generation",
            extra={
                "artifact_id": str(artifact.id),
                "content_family": artifact.content_family.value,
                "task_id": task_id,
            },
        )
        return artifact

    def request_regeneration(
        self,
        artifact_id: UUID,
        content_family: ContentFamily | None = None,
        skip_audio: bool = False,
        skip_video: bool = False,
    ) -> str | None:
        """
        Enqueue a user-initiated regeneration at high priority.

        The reset itself happens in the worker, atomically with entering
        generating.

        Returns:
            Celery task id, or None if a generation job is already pending
        """
        artifact = self._get(artifact_id)
        if artifact.status not in REGENERABLE_STATUSES:
            logger.warning(
                "Regeneration requested for an artifact that is not completed or failed",
                extra={
                    "warning": "precondition",
                    "artifact_id": str(artifact.id),
                    "status": artifact.status.value,
                },
            )

        payload: dict[str, Any] = {
            "artifact_id": str(artifact.id),
            "regenerate": True,
            "skip_audio": skip_audio,
            "skip_video": skip_video,
        }
        if content_family is not None:
            payload["content_family"] = ContentFamily(content_family).value

        task_id = self._enqueue(
            QUEUE_GENERATION,
            GENERATE_ARTIFACT_TASK,
            payload,
            job_id=generation_job_id(artifact.id),
            priority=PRIORITY_USER,
        )

        if task_id is None:
            # One generation job per artifact; the pending one runs with its own options
            logger.warning(
                "Regeneration dropped, a generation job for this artifact is already pending",
                extra={
                    "warning": "precondition",
                    "artifact_id": str(artifact.id),
                    "job_id": generation_job_id(artifact.id),
                    "dropped_content_family": payload.get("content_family"),
                },
            )
            return None

        logger.info(
            "Regeneration requested",
            extra={"artifact_id": str(artifact.id), "task_id": task_id},
        )
        return task_id

    def _get(self, artifact_id: UUID) -> Artifact:
        artifact = self._db.get(Artifact, artifact_id)
        if artifact is None:
            raise NotFoundError("Artifact", str(artifact_id))
        return artifact


__all__ = ["SubmissionService", "generation_job_id"]
