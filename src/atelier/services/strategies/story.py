"""
Story strategy: a titled, paginated narrative with a plotline and cast.

Generation runs in two structured-output calls: an outline (title, plotline,
characters) and then the pages written against that outline.
"""

import json
import logging
import time

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete
from sqlalchemy.orm import Session

from atelier.core.exceptions import GenerationError
from atelier.models.artifact import Artifact
from atelier.models.artifact_page import ArtifactPage
from atelier.models.enums import ContentFamily
from atelier.services.results import (
    GenerationResult,
    GenerationUsage,
    PageContent,
    StoryPayload,
)
from atelier.services.strategies.base import ContentStrategy, GenerationContext

logger = logging.getLogger(__name__)

DEFAULT_PAGE_COUNT = 8


# =============================================================================
# Structured Output Schemas
# =============================================================================


class StoryCharacter(BaseModel):
    """A character appearing in the story."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Character name")
    role: str = Field(description="Role in the story: protagonist, antagonist, supporting")
    description: str = Field(description="One-sentence visual and personality description")


class StoryOutline(BaseModel):
    """Outline produced by the first call."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(description="Story title")
    subtitle: str = Field(description="Short subtitle or tagline")
    description: str = Field(description="Two-sentence blurb for the back cover")
    plotline: str = Field(description="Beginning, middle and end of the story in one paragraph")
    characters: list[StoryCharacter] = Field(
        description="Main characters (1-4)",
        min_length=1,
        max_length=4,
    )


class StoryPage(BaseModel):
    """One page of story text with its illustration brief."""

    model_config = ConfigDict(extra="forbid")

    text: str = Field(description="Page text, 2-4 sentences")
    image_prompt: str = Field(description="Illustration prompt for this page")


class StoryPages(BaseModel):
    """Pages produced by the second call."""

    model_config = ConfigDict(extra="forbid")

    pages: list[StoryPage] = Field(min_length=1)


SYSTEM_PROMPT = (
    "You are a children's picture-book author. Write warm, concrete stories "
    "with a clear arc and vivid, illustratable scenes."
)


class StoryStrategy(ContentStrategy):
    """Paginated story generation."""

    family = ContentFamily.STORY

    def _page_count(self, context: GenerationContext) -> int:
        requested = context.input_meta.get("page_count")
        if isinstance(requested, int) and 1 <= requested <= 24:
            return requested
        return DEFAULT_PAGE_COUNT

    def generate(self, context: GenerationContext) -> GenerationResult:
        """
        Generate an outline and pages for the prompt.

        Args:
            context: Snapshot of the artifact and its input

        Returns:
            GenerationResult carrying a StoryPayload

        Raises:
            GenerationError: If the model returns no pages
        """
        start_time = time.time()
        page_count = self._page_count(context)

        outline, outline_usage = self.openai.complete_with_schema(
            messages=[
                {
                    "role": "user",
                    "content": f"Outline a {page_count}-page story about:\n\n{context.prompt}",
                }
            ],
            response_model=StoryOutline,
            system_message=SYSTEM_PROMPT,
        )

        characters = [c.model_dump() for c in outline.characters]
        pages_prompt = (
            f"Write the story '{outline.title}' in exactly {page_count} pages.\n\n"
            f"Plotline:\n{outline.plotline}\n\n"
            f"Characters:\n{json.dumps(characters, indent=2)}"
        )
        drafted, pages_usage = self.openai.complete_with_schema(
            messages=[{"role": "user", "content": pages_prompt}],
            response_model=StoryPages,
            system_message=SYSTEM_PROMPT,
        )

        if not drafted.pages:
            raise GenerationError(
                message="Story generation returned no pages",
                artifact_id=str(context.artifact_id),
                family=self.family.value,
            )

        usage = GenerationUsage.from_token_usage(
            outline_usage + pages_usage,
            generation_time_seconds=time.time() - start_time,
            provider=self.openai.provider,
        )

        logger.info(
            "Story generated",
            extra={
                "artifact_id": str(context.artifact_id),
                "page_count": len(drafted.pages),
                "total_tokens": usage.total_tokens,
                "cost_usd": float(usage.cost_usd),
            },
        )

        return GenerationResult(
            usage=usage,
            payload=StoryPayload(
                title=outline.title,
                subtitle=outline.subtitle,
                description=outline.description,
                plotline=outline.plotline,
                character_json={"characters": characters},
                pages=[
                    PageContent(page_number=i, text=page.text, image_prompt=page.image_prompt)
                    for i, page in enumerate(drafted.pages, start=1)
                ],
            ),
        )

    def persist(self, db: Session, artifact: Artifact, result: GenerationResult) -> None:
        payload = result.payload
        if not isinstance(payload, StoryPayload):
            raise GenerationError(
                message=f"Story strategy cannot persist a '{payload.family}' payload",
                artifact_id=str(artifact.id),
                family=self.family.value,
            )

        artifact.title = payload.title
        artifact.subtitle = payload.subtitle
        artifact.description = payload.description
        artifact.update_meta(
            plotline=payload.plotline,
            character_json=payload.character_json,
        )

        # Pages are replaced wholesale; a cycle never appends to an older set
        db.execute(delete(ArtifactPage).where(ArtifactPage.artifact_id == artifact.id))
        for page in payload.pages:
            db.add(
                ArtifactPage(
                    artifact_id=artifact.id,
                    page_number=page.page_number,
                    text=page.text,
                    image_prompt=page.image_prompt,
                    layout_data=page.layout_data or {},
                )
            )
