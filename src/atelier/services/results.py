"""
Generation result types shared by the content strategies and the orchestrator.

A GenerationResult is a common usage envelope plus a family payload. The
payload is a discriminated union on the ``family`` literal so the persist
step can dispatch without isinstance chains.
"""

from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from atelier.integrations.openai_client import TokenUsage


class GenerationUsage(BaseModel):
    """Token, cost and timing telemetry for one generation cycle."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: Decimal = Decimal("0")
    generation_time_seconds: float = 0.0
    model: str | None = None
    provider: str | None = None

    @classmethod
    def from_token_usage(
        cls,
        usage: TokenUsage,
        generation_time_seconds: float,
        provider: str = "openai",
    ) -> "GenerationUsage":
        return cls(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cost_usd=usage.estimated_cost_usd,
            generation_time_seconds=round(generation_time_seconds, 3),
            model=usage.model or None,
            provider=provider,
        )


class PageContent(BaseModel):
    """One page of a story."""

    page_number: int = Field(ge=1)
    text: str
    image_prompt: str | None = None
    layout_data: dict[str, Any] | None = None


class StoryPayload(BaseModel):
    """Result fields produced by the story family."""

    model_config = ConfigDict(extra="forbid")

    family: Literal["story"] = "story"
    title: str
    subtitle: str | None = None
    description: str | None = None
    plotline: str | None = None
    character_json: dict[str, Any] | None = None
    pages: list[PageContent] = Field(default_factory=list)


class MonologuePayload(BaseModel):
    """Result fields produced by the monologue family."""

    model_config = ConfigDict(extra="forbid")

    family: Literal["monologue"] = "monologue"
    monologue_text: str
    title: str | None = None


ContentPayload = Annotated[StoryPayload | MonologuePayload, Field(discriminator="family")]


class GenerationResult(BaseModel):
    """
    Output of a content strategy.

    Attributes:
        usage: Telemetry for the cycle
        payload: Family-specific result fields
    """

    usage: GenerationUsage
    payload: ContentPayload

    @property
    def family(self) -> str:
        return self.payload.family
