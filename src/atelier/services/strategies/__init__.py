"""
Content strategies, selected by the artifact's content family.
"""

from atelier.core.config import Settings
from atelier.core.exceptions import ValidationError
from atelier.integrations.openai_client import OpenAIClient
from atelier.models.enums import ContentFamily
from atelier.services.strategies.base import ContentStrategy, GenerationContext
from atelier.services.strategies.monologue import MonologueStrategy
from atelier.services.strategies.story import StoryStrategy

STRATEGIES: dict[ContentFamily, type[ContentStrategy]] = {
    ContentFamily.STORY: StoryStrategy,
    ContentFamily.MONOLOGUE: MonologueStrategy,
}


def get_strategy(
    family: ContentFamily | str,
    openai_client: OpenAIClient | None = None,
    settings: Settings | None = None,
) -> ContentStrategy:
    """
    Instantiate the strategy for a content family.

    Raises:
        ValidationError: If the family is unknown
    """
    try:
        family = ContentFamily(family)
    except ValueError as e:
        raise ValidationError(
            message=f"Unknown content family '{family}'",
            field="content_family",
        ) from e
    return STRATEGIES[family](openai_client=openai_client, settings=settings)


__all__ = [
    "ContentStrategy",
    "GenerationContext",
    "MonologueStrategy",
    "StoryStrategy",
    "STRATEGIES",
    "get_strategy",
]
