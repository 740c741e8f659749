"""
Monologue strategy: a short first-person spoken piece.

The monologue is the only family that feeds the derived-asset pipeline;
its text is narrated to audio and rendered to video after completion.
"""

import logging
import time

from sqlalchemy.orm import Session

from atelier.core.exceptions import GenerationError
from atelier.models.artifact import Artifact
from atelier.models.enums import ContentFamily, DerivedAssetKind
from atelier.services.results import GenerationResult, GenerationUsage, MonologuePayload
from atelier.services.strategies.base import ContentStrategy, GenerationContext

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write short first-person monologues meant to be read aloud. "
    "Use plain spoken language, no stage directions, no headings, no quotes. "
    "Keep it under 60 words."
)
MAX_TOKENS = 160


class MonologueStrategy(ContentStrategy):
    """Single-call monologue generation."""

    family = ContentFamily.MONOLOGUE
    derived_stages = (DerivedAssetKind.TEXT, DerivedAssetKind.AUDIO, DerivedAssetKind.VIDEO)

    def generate(self, context: GenerationContext) -> GenerationResult:
        start_time = time.time()

        completion = self.openai.complete(
            messages=[{"role": "user", "content": context.prompt}],
            system_message=SYSTEM_PROMPT,
            max_tokens=MAX_TOKENS,
            temperature=0.9,
        )
        text = completion.content.strip().strip('"').strip()

        if not text:
            raise GenerationError(
                message="Monologue generation returned empty text",
                artifact_id=str(context.artifact_id),
                family=self.family.value,
                details={"finish_reason": completion.finish_reason},
            )

        usage = GenerationUsage.from_token_usage(
            completion.usage,
            generation_time_seconds=time.time() - start_time,
            provider=self.openai.provider,
        )

        logger.info(
            "Monologue generated",
            extra={
                "artifact_id": str(context.artifact_id),
                "characters": len(text),
                "total_tokens": usage.total_tokens,
            },
        )

        title = context.input_meta.get("title")
        return GenerationResult(
            usage=usage,
            payload=MonologuePayload(
                monologue_text=text,
                title=title if isinstance(title, str) else None,
            ),
        )

    def persist(self, db: Session, artifact: Artifact, result: GenerationResult) -> None:
        payload = result.payload
        if not isinstance(payload, MonologuePayload):
            raise GenerationError(
                message=f"Monologue strategy cannot persist a '{payload.family}' payload",
                artifact_id=str(artifact.id),
                family=self.family.value,
            )

        artifact.title = payload.title
        artifact.description = payload.monologue_text
        artifact.update_meta(monologue_text=payload.monologue_text)
