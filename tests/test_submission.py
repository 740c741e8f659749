"""
Tests for artifact submission and regeneration requests.
"""

import logging
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from atelier.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from atelier.models import Artifact, ArtifactStatus, ContentFamily
from atelier.services.submission import SubmissionService, generation_job_id
from atelier.workers.celery_app import QUEUE_GENERATION
from atelier.workers.queue import GENERATE_ARTIFACT_TASK, PRIORITY_BACKGROUND, PRIORITY_USER


@pytest.fixture
def enqueue_fn() -> MagicMock:
    return MagicMock(return_value="gen-task-1")


@pytest.fixture
def service(db, enqueue_fn) -> SubmissionService:
    return SubmissionService(db, enqueue_fn=enqueue_fn)


class TestSubmit:
    """Tests for creating and submitting artifacts."""

    def test_submit_creates_pending_and_enqueues(self, service, enqueue_fn, reload) -> None:
        artifact = service.submit(
            prompt="  A storm that wants a friend  ",
            owner_id="user-1",
            content_family=ContentFamily.MONOLOGUE,
            skip_video=True,
        )

        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.PENDING
        assert stored.input.prompt == "A storm that wants a friend"
        assert stored.generation_count == 0
        enqueue_fn.assert_called_once_with(
            QUEUE_GENERATION,
            GENERATE_ARTIFACT_TASK,
            {
                "artifact_id": str(artifact.id),
                "regenerate": False,
                "skip_audio": False,
                "skip_video": True,
            },
            job_id=generation_job_id(artifact.id),
            priority=PRIORITY_BACKGROUND,
        )

    def test_empty_prompt_rejected(self, service, enqueue_fn) -> None:
        with pytest.raises(ValidationError):
            service.submit(prompt="   ")
        enqueue_fn.assert_not_called()

    def test_draft_stays_unscheduled(self, service, enqueue_fn) -> None:
        artifact = service.create_draft(prompt="later")

        assert artifact.status == ArtifactStatus.DRAFT
        enqueue_fn.assert_not_called()

    def test_submit_draft_twice_rejected(self, service, enqueue_fn) -> None:
        artifact = service.create_draft(prompt="once")
        service.submit_draft(artifact.id)

        with pytest.raises(InvalidTransitionError):
            service.submit_draft(artifact.id)
        assert enqueue_fn.call_count == 1


class TestRequestRegeneration:
    """Tests for user-initiated regeneration."""

    def test_enqueues_at_user_priority(self, service, enqueue_fn, make_artifact) -> None:
        artifact = make_artifact(status=ArtifactStatus.COMPLETED, generation_count=1)

        task_id = service.request_regeneration(artifact.id, content_family=ContentFamily.STORY)

        assert task_id == "gen-task-1"
        args, kwargs = enqueue_fn.call_args
        assert args[2]["regenerate"] is True
        assert args[2]["content_family"] == "story"
        assert kwargs["priority"] == PRIORITY_USER
        assert kwargs["job_id"] == f"generate-{artifact.id}"

    def test_non_terminal_status_only_warns(self, service, enqueue_fn, make_artifact) -> None:
        artifact = make_artifact(status=ArtifactStatus.GENERATING)

        service.request_regeneration(artifact.id)

        enqueue_fn.assert_called_once()

    def test_collapsed_regeneration_is_logged(
        self, service, enqueue_fn, make_artifact, caplog
    ) -> None:
        """A request that collapses into a pending job says so, including the lost override."""
        artifact = make_artifact(status=ArtifactStatus.PENDING)
        enqueue_fn.return_value = None

        with caplog.at_level(logging.WARNING, logger="atelier.services.submission"):
            task_id = service.request_regeneration(artifact.id, content_family=ContentFamily.STORY)

        assert task_id is None
        dropped = [r for r in caplog.records if r.getMessage().startswith("Regeneration dropped")]
        assert len(dropped) == 1
        assert dropped[0].dropped_content_family == "story"
        assert dropped[0].job_id == generation_job_id(artifact.id)

    def test_missing_artifact(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.request_regeneration(uuid4())
