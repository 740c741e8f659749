"""
Pytest configuration and fixtures for Atelier tests.

Provides an in-memory database wired into the shared session factory,
fake storage and OpenAI clients, and factory functions for test data.
"""

import os
from collections.abc import Callable, Generator
from datetime import timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before importing application
os.environ["ENVIRONMENT"] = "development"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["S3_ACCESS_KEY"] = "test"
os.environ["S3_SECRET_KEY"] = "test"
os.environ["OPENAI_API_KEY"] = "sk-test-key"

from atelier.core import database  # noqa: E402
from atelier.core.config import get_settings  # noqa: E402
from atelier.integrations.openai_client import (  # noqa: E402
    CompletionResult,
    SpeechResult,
    TokenUsage,
)
from atelier.integrations.storage_client import UploadResult, artifact_asset_key  # noqa: E402
from atelier.models import (  # noqa: E402
    Artifact,
    ArtifactStatus,
    Base,
    ContentFamily,
    DerivedAsset,
    DerivedAssetKind,
    Input,
    ProvisionalResource,
    ProvisionalResourceStatus,
)
from atelier.models.base import utcnow  # noqa: E402

ASSETS_BUCKET = "atelier-assets"

# Test database setup
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


@pytest.fixture(autouse=True)
def setup_database(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """
    Create tables for each test and route every session scope to them.

    Drops all tables after the test.
    """
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database, "_SessionLocal", TestingSessionLocal)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Provide a database session for arranging and inspecting rows."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def storage() -> MagicMock:
    """
    In-memory stand-in for the S3 storage client.

    Uploaded bytes are kept in ``storage.blobs`` keyed by object key.
    """
    client = MagicMock()
    client.default_assets_bucket = ASSETS_BUCKET
    blobs: dict[str, bytes] = {}

    def upload(data, artifact_id, kind, asset_id, file_extension, content_type=None):
        key = artifact_asset_key(artifact_id, kind, asset_id, file_extension)
        blobs[key] = data
        return UploadResult(
            bucket=ASSETS_BUCKET,
            key=key,
            etag="etag",
            content_type=content_type or "application/octet-stream",
            file_size_bytes=len(data),
        )

    def delete(bucket, key):
        blobs.pop(key, None)

    def presign(bucket, key, *, expires_in=3600, for_upload=False):
        op = "put_object" if for_upload else "get_object"
        return f"https://s3.test/{bucket}/{key}?op={op}"

    client.upload_artifact_asset.side_effect = upload
    client.download_file.side_effect = lambda bucket, key: blobs[key]
    client.delete_file.side_effect = delete
    client.presigned_url.side_effect = presign
    client.blobs = blobs
    return client


def make_usage(input_tokens: int = 100, output_tokens: int = 50) -> TokenUsage:
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        model="gpt-4o-mini",
        estimated_cost_usd=Decimal("0.000045"),
    )


@pytest.fixture
def openai_client() -> MagicMock:
    """OpenAI client returning a fixed monologue and a short speech clip."""
    client = MagicMock()
    client.provider = "openai"
    client.complete.return_value = CompletionResult(
        content="I keep the light burning for ships that never come.",
        usage=make_usage(),
        model="gpt-4o-mini",
        finish_reason="stop",
    )
    client.synthesize_speech.return_value = SpeechResult(
        audio=b"ID3-fake-mp3",
        content_type="audio/mpeg",
        model="gpt-4o-mini-tts",
        voice="sage",
        characters=52,
        cost_usd=Decimal("0.0008"),
        estimated_duration_seconds=4,
    )
    return client


@pytest.fixture
def make_artifact(db: Session) -> Callable[..., Artifact]:
    """Factory for an Input and an Artifact, committed."""

    def _make(
        prompt: str = "A lighthouse keeper who talks to the sea",
        family: ContentFamily = ContentFamily.MONOLOGUE,
        status: ArtifactStatus = ArtifactStatus.PENDING,
        input_meta: dict[str, Any] | None = None,
        generation_count: int = 0,
        **fields: Any,
    ) -> Artifact:
        source = Input(prompt=prompt, input_meta=input_meta or {})
        db.add(source)
        db.flush()
        meta = {"generation_count": generation_count}
        meta.update(fields.pop("artifact_meta", {}))
        artifact = Artifact(
            input_id=source.id,
            content_family=family,
            status=status,
            artifact_meta=meta,
            **fields,
        )
        db.add(artifact)
        db.commit()
        return artifact

    return _make


@pytest.fixture
def add_asset(db: Session, storage: MagicMock) -> Callable[..., DerivedAsset]:
    """Factory for a derived asset whose blob exists in fake storage."""

    def _add(
        artifact: Artifact,
        kind: DerivedAssetKind,
        data: bytes = b"payload",
        duration_seconds: float | None = None,
    ) -> DerivedAsset:
        asset = DerivedAsset(artifact_id=artifact.id, kind=kind, duration_seconds=duration_seconds)
        asset.storage_bucket = ASSETS_BUCKET
        asset.storage_key = f"artifacts/{artifact.id}/{kind.value}/seed.bin"
        storage.blobs[asset.storage_key] = data
        db.add(asset)
        db.commit()
        return asset

    return _add


@pytest.fixture
def make_resource(db: Session) -> Callable[..., ProvisionalResource]:
    """Factory for a provisional resource expiring relative to now."""

    def _make(
        expires_in: timedelta | None = timedelta(hours=1),
        status: ProvisionalResourceStatus = ProvisionalResourceStatus.PENDING,
        upload_session_id: str = "session-1",
        owner_id: str = "user-1",
        **fields: Any,
    ) -> ProvisionalResource:
        resource = ProvisionalResource(
            owner_id=owner_id,
            upload_session_id=upload_session_id,
            storage_bucket=ASSETS_BUCKET,
            storage_key=f"uploads/{owner_id}/{upload_session_id}/{uuid4()}.png",
            status=status,
            expires_at=utcnow() + expires_in if expires_in is not None else None,
            **fields,
        )
        db.add(resource)
        db.commit()
        return resource

    return _make


@pytest.fixture
def reload(db: Session) -> Callable[[type, Any], Any]:
    """Read a row fresh from the database."""

    def _reload(model: type, ident: Any) -> Any:
        db.expire_all()
        return db.get(model, ident)

    return _reload
