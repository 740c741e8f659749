"""
Tests for the generation orchestrator.

The worker session factory points at the in-memory test database, so
these run the real transaction boundaries with fake OpenAI and storage
clients.
"""

import logging
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from atelier.core.database import get_db_session
from atelier.core.exceptions import (
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from atelier.models import (
    Artifact,
    ArtifactPage,
    ArtifactStatus,
    ContentFamily,
    DerivedAsset,
    DerivedAssetKind,
)
from atelier.services.generation import GenerationOrchestrator, GenerationRequest
from atelier.services.strategies.monologue import MonologueStrategy
from atelier.services.strategies.story import (
    StoryCharacter,
    StoryOutline,
    StoryPage,
    StoryPages,
)
from atelier.workers.celery_app import QUEUE_MEDIA
from atelier.workers.queue import DERIVED_STAGE_TASK, PRIORITY_BACKGROUND
from conftest import make_usage


@pytest.fixture
def enqueue_fn() -> MagicMock:
    return MagicMock(return_value="derived-task-1")


@pytest.fixture
def orchestrator(storage, openai_client, settings, enqueue_fn) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        storage=storage,
        openai_client=openai_client,
        settings=settings,
        enqueue_fn=enqueue_fn,
    )


class TestInitialGeneration:
    """Tests for a first generation cycle."""

    def test_monologue_completes(self, orchestrator, make_artifact, reload) -> None:
        """A pending monologue completes with its text and telemetry."""
        artifact = make_artifact(input_meta={"title": "The Keeper"})

        outcome = orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.COMPLETED
        assert stored.title == "The Keeper"
        assert stored.description.startswith("I keep the light")
        assert stored.artifact_meta["monologue_text"] == stored.description
        assert stored.generation_count == 1
        assert stored.total_tokens == 150
        assert stored.ai_provider == "openai"
        assert stored.error_message is None
        assert "completed_at" in stored.artifact_meta

        assert outcome.regenerated is False
        assert outcome.superseded is False
        assert outcome.generation_count == 1

    def test_monologue_enqueues_text_stage(
        self, orchestrator, enqueue_fn, make_artifact, settings
    ) -> None:
        """Completion schedules the first derived stage, scoped to the cycle."""
        artifact = make_artifact()

        outcome = orchestrator.generate(GenerationRequest(artifact_id=artifact.id, skip_video=True))

        assert outcome.derived_task_id == "derived-task-1"
        args, kwargs = enqueue_fn.call_args
        assert args[0] == QUEUE_MEDIA
        assert args[1] == DERIVED_STAGE_TASK
        assert args[2] == {
            "artifact_id": str(artifact.id),
            "stage": "text",
            "skip_audio": False,
            "skip_video": True,
        }
        assert kwargs["job_id"] == f"derived-{artifact.id}-text-g1"
        assert kwargs["delay_ms"] == settings.derived_asset_delay_seconds * 1000
        assert kwargs["priority"] == PRIORITY_BACKGROUND

    def test_story_persists_pages(
        self, orchestrator, openai_client, enqueue_fn, make_artifact, db
    ) -> None:
        """A story stores its outline fields and numbered pages."""
        outline = StoryOutline(
            title="The Storm Friend",
            subtitle="A tale of wind",
            description="A keeper meets a storm.",
            plotline="The storm arrives, they talk, it leaves.",
            characters=[StoryCharacter(name="Ada", role="protagonist", description="A keeper")],
        )
        pages = StoryPages(
            pages=[
                StoryPage(text="The sky darkened.", image_prompt="dark sky"),
                StoryPage(text="Ada lit the lamp.", image_prompt="lamp"),
            ]
        )
        openai_client.complete_with_schema.side_effect = [
            (outline, make_usage()),
            (pages, make_usage(200, 100)),
        ]
        artifact = make_artifact(family=ContentFamily.STORY, input_meta={"page_count": 2})

        outcome = orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        db.expire_all()
        stored = db.get(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.COMPLETED
        assert stored.title == "The Storm Friend"
        assert stored.artifact_meta["plotline"].startswith("The storm arrives")
        assert stored.artifact_meta["character_json"]["characters"][0]["name"] == "Ada"
        assert [p.page_number for p in stored.pages] == [1, 2]
        assert stored.pages[1].text == "Ada lit the lamp."
        assert stored.total_tokens == 450
        # Stories have no derived stages
        enqueue_fn.assert_not_called()
        assert outcome.derived_task_id is None

    def test_content_family_override(
        self, orchestrator, openai_client, make_artifact, reload
    ) -> None:
        """The request's family replaces the artifact's."""
        artifact = make_artifact(family=ContentFamily.STORY)

        orchestrator.generate(
            GenerationRequest(artifact_id=artifact.id, content_family=ContentFamily.MONOLOGUE)
        )

        stored = reload(Artifact, artifact.id)
        assert stored.content_family == ContentFamily.MONOLOGUE
        openai_client.complete_with_schema.assert_not_called()


class TestRegeneration:
    """Tests for regeneration and its reset."""

    def test_reset_removes_prior_results(
        self, orchestrator, storage, make_artifact, add_asset, db, reload
    ) -> None:
        """Old pages, derived assets and their blobs are gone after regenerating."""
        artifact = make_artifact(
            status=ArtifactStatus.COMPLETED,
            generation_count=1,
            title="Old title",
            artifact_meta={"plotline": "old plot"},
        )
        db.add(ArtifactPage(artifact_id=artifact.id, page_number=1, text="old page"))
        db.commit()
        asset = add_asset(artifact, DerivedAssetKind.TEXT)

        outcome = orchestrator.generate(GenerationRequest(artifact_id=artifact.id, regenerate=True))

        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.COMPLETED
        assert stored.generation_count == 2
        assert stored.title is None
        assert stored.pages == []
        assert "plotline" not in stored.artifact_meta
        assert db.get(DerivedAsset, asset.id) is None
        assert asset.storage_key not in storage.blobs
        assert outcome.regenerated is True
        assert outcome.removed_blob_count == 1

    def test_initial_generate_on_completed_runs_as_regeneration(
        self, orchestrator, make_artifact, reload, caplog
    ) -> None:
        """A non-regenerate request on a finished artifact resets it instead of failing."""
        artifact = make_artifact(status=ArtifactStatus.COMPLETED, generation_count=3)

        with caplog.at_level(logging.WARNING):
            outcome = orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        assert outcome.regenerated is True
        assert reload(Artifact, artifact.id).generation_count == 4
        assert any(getattr(r, "warning", None) == "precondition" for r in caplog.records)

    def test_failed_artifact_can_regenerate(self, orchestrator, make_artifact, reload) -> None:
        artifact = make_artifact(status=ArtifactStatus.FAILED, error_message="earlier failure")

        orchestrator.generate(GenerationRequest(artifact_id=artifact.id, regenerate=True))

        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.COMPLETED
        assert stored.error_message is None

    def test_blob_delete_failure_is_logged(
        self, orchestrator, storage, make_artifact, add_asset, reload, caplog
    ) -> None:
        """A storage error during reset does not stop the cycle."""
        artifact = make_artifact(status=ArtifactStatus.COMPLETED, generation_count=1)
        add_asset(artifact, DerivedAssetKind.AUDIO)
        storage.delete_file.side_effect = RuntimeError("s3 down")

        with caplog.at_level(logging.WARNING):
            orchestrator.generate(GenerationRequest(artifact_id=artifact.id, regenerate=True))

        assert reload(Artifact, artifact.id).status == ArtifactStatus.COMPLETED
        assert any(
            getattr(r, "warning", None) == "storage_inconsistency" for r in caplog.records
        )


class TestFailures:
    """Tests for failure handling."""

    def test_strategy_error_marks_failed(
        self, orchestrator, openai_client, enqueue_fn, make_artifact, reload
    ) -> None:
        """A strategy exception leaves the artifact failed and is re-raised."""
        openai_client.complete.side_effect = ExternalServiceError(
            service="OpenAI",
            message="upstream unavailable",
        )
        artifact = make_artifact()

        with pytest.raises(ExternalServiceError):
            orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.FAILED
        assert "upstream unavailable" in stored.error_message
        assert "failed_at" in stored.artifact_meta
        assert stored.generation_count == 1
        enqueue_fn.assert_not_called()

    def test_empty_monologue_fails(self, orchestrator, openai_client, make_artifact, reload) -> None:
        openai_client.complete.return_value.content = "   "
        artifact = make_artifact()

        with pytest.raises(Exception, match="empty text"):
            orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        assert reload(Artifact, artifact.id).status == ArtifactStatus.FAILED

    def test_missing_artifact(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            orchestrator.generate(GenerationRequest(artifact_id=uuid4()))

    def test_missing_input_marks_failed(self, orchestrator, db, reload) -> None:
        """An artifact whose input is gone is failed before the error surfaces."""
        artifact = Artifact(
            input_id=uuid4(),
            content_family=ContentFamily.MONOLOGUE,
            status=ArtifactStatus.PENDING,
            artifact_meta={"generation_count": 0},
        )
        db.add(artifact)
        db.commit()

        with pytest.raises(NotFoundError) as exc_info:
            orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        assert "Input" in exc_info.value.message
        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.FAILED
        assert "not found" in stored.error_message

    def test_draft_cannot_generate(self, orchestrator, openai_client, make_artifact, reload) -> None:
        """A draft has not been submitted; the status is left alone."""
        artifact = make_artifact(status=ArtifactStatus.DRAFT)

        with pytest.raises(InvalidTransitionError):
            orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        assert reload(Artifact, artifact.id).status == ArtifactStatus.DRAFT
        openai_client.complete.assert_not_called()

    def test_unknown_family_fails_pending_artifact(
        self, orchestrator, openai_client, make_artifact, reload
    ) -> None:
        """A job naming an unknown family does not leave the artifact pending."""
        artifact = make_artifact()

        with pytest.raises(ValidationError):
            orchestrator.generate(GenerationRequest(artifact_id=artifact.id, content_family="poem"))

        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.FAILED
        assert "poem" in stored.error_message
        assert stored.content_family == ContentFamily.MONOLOGUE
        openai_client.complete.assert_not_called()

    def test_unknown_family_leaves_completed_artifact(self, orchestrator, make_artifact, reload) -> None:
        """Finished content is not thrown away by a bad regeneration request."""
        artifact = make_artifact(status=ArtifactStatus.COMPLETED, description="Kept")

        with pytest.raises(ValidationError):
            orchestrator.generate(
                GenerationRequest(artifact_id=artifact.id, regenerate=True, content_family="poem")
            )

        stored = reload(Artifact, artifact.id)
        assert stored.status == ArtifactStatus.COMPLETED
        assert stored.description == "Kept"

    def test_enqueue_failure_keeps_completion(
        self, orchestrator, enqueue_fn, make_artifact, reload
    ) -> None:
        """Failing to schedule derived assets does not fail the artifact."""
        enqueue_fn.side_effect = ConnectionError("broker down")
        artifact = make_artifact()

        outcome = orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        assert outcome.derived_task_id is None
        assert reload(Artifact, artifact.id).status == ArtifactStatus.COMPLETED


class OvertakenStrategy(MonologueStrategy):
    """Monologue strategy during which another cycle starts."""

    def generate(self, context):
        result = super().generate(context)
        with get_db_session() as db:
            artifact = db.get(Artifact, context.artifact_id)
            artifact.update_meta(generation_count=artifact.generation_count + 1)
        return result


class TestSupersededCycle:
    """Tests for a cycle overtaken by a newer one."""

    def test_result_is_discarded(
        self, storage, openai_client, settings, enqueue_fn, make_artifact, reload
    ) -> None:
        orchestrator = GenerationOrchestrator(
            storage=storage,
            openai_client=openai_client,
            settings=settings,
            enqueue_fn=enqueue_fn,
            strategy_factory=lambda family, openai_client=None, settings=None: OvertakenStrategy(
                openai_client=openai_client, settings=settings
            ),
        )
        artifact = make_artifact()

        outcome = orchestrator.generate(GenerationRequest(artifact_id=artifact.id))

        stored = reload(Artifact, artifact.id)
        assert outcome.superseded is True
        assert stored.status == ArtifactStatus.GENERATING
        assert stored.description is None
        enqueue_fn.assert_not_called()


class TestGenerationRequest:
    """Tests for payload parsing."""

    def test_from_payload(self) -> None:
        artifact_id = uuid4()

        request = GenerationRequest.from_payload(
            {"artifact_id": str(artifact_id), "content_family": "story", "skip_audio": True}
        )

        assert request.artifact_id == artifact_id
        assert request.content_family == ContentFamily.STORY
        assert request.regenerate is False
        assert request.skip_audio is True

    def test_family_is_checked_by_the_orchestrator(self) -> None:
        """Parsing keeps an unknown family so the job can fail the artifact."""
        request = GenerationRequest.from_payload({"artifact_id": str(uuid4()), "content_family": "poem"})

        assert request.content_family == "poem"

    def test_bad_artifact_id_rejected(self) -> None:
        with pytest.raises(ValueError):
            GenerationRequest.from_payload({"artifact_id": "not-a-uuid"})
