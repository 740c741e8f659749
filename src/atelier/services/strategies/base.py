"""
Base class for content strategies.

A strategy turns an Input prompt into a GenerationResult for one content
family and knows how to write that result onto the artifact. Strategies
never open transactions themselves: generate() runs with no session open
and persist() runs inside the caller's transaction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from atelier.core.config import Settings, get_settings
from atelier.integrations.openai_client import OpenAIClient, get_openai_client
from atelier.models.artifact import Artifact
from atelier.models.enums import ContentFamily, DerivedAssetKind
from atelier.services.results import GenerationResult


@dataclass(frozen=True)
class GenerationContext:
    """
    Detached snapshot of everything a strategy needs.

    Built inside the reset transaction so the strategy can run without
    holding a session.
    """

    artifact_id: UUID
    family: ContentFamily
    prompt: str
    generation_count: int
    input_meta: dict[str, Any] = field(default_factory=dict)


class ContentStrategy(ABC):
    """Generates and persists content for a single family."""

    family: ContentFamily
    # Derived-asset stages the family feeds once generation completes
    derived_stages: tuple[DerivedAssetKind, ...] = ()

    def __init__(
        self,
        openai_client: OpenAIClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._openai_client = openai_client

    @property
    def openai(self) -> OpenAIClient:
        # Created on first use so strategies can be registered without credentials
        if self._openai_client is None:
            self._openai_client = get_openai_client(self._settings)
        return self._openai_client

    @abstractmethod
    def generate(self, context: GenerationContext) -> GenerationResult:
        """Produce content for the context. Must not touch the database."""

    @abstractmethod
    def persist(self, db: Session, artifact: Artifact, result: GenerationResult) -> None:
        """Write the family payload onto the artifact and its children."""
