"""
OpenAI client for artifact text and narrated audio.

Transient failures (429, 5xx, dropped connections) are retried by the SDK
itself; this wrapper converts whatever survives into ExternalServiceError
or RateLimitError, prices every call, and validates structured output
against pydantic models.
"""

import logging
import math
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, TypeVar

import openai
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from atelier.core.config import Settings, get_settings
from atelier.core.exceptions import ExternalServiceError
from atelier.core.exceptions import RateLimitError as AtelierRateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

SERVICE_NAME = "OpenAI"

# Chat pricing per 1K tokens
MODEL_PRICING: dict[str, dict[str, str]] = {
    "gpt-4o": {"input": "0.0025", "output": "0.01"},
    "gpt-4o-mini": {"input": "0.00015", "output": "0.0006"},
    "gpt-4.1-mini": {"input": "0.0004", "output": "0.0016"},
}
DEFAULT_PRICED_MODEL = "gpt-4o-mini"

# Speech pricing per 1K input characters
TTS_PRICING: dict[str, str] = {
    "gpt-4o-mini-tts": "0.015",
    "tts-1": "0.015",
    "tts-1-hd": "0.03",
}

# Average speaking rate used to estimate narration length
CHARACTERS_PER_SECOND = 12


@dataclass
class TokenUsage:
    """Tokens and estimated spend for one or more chat calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    estimated_cost_usd: Decimal = field(default_factory=lambda: Decimal("0"))

    @classmethod
    def priced(cls, model: str, input_tokens: int, output_tokens: int) -> "TokenUsage":
        """Build usage and price it; unknown models fall back to the default rate card."""
        rates = MODEL_PRICING.get(model, MODEL_PRICING[DEFAULT_PRICED_MODEL])
        cost = (
            Decimal(input_tokens) * Decimal(rates["input"])
            + Decimal(output_tokens) * Decimal(rates["output"])
        ) / Decimal(1000)
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            model=model,
            estimated_cost_usd=cost,
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            model=other.model or self.model,
            estimated_cost_usd=self.estimated_cost_usd + other.estimated_cost_usd,
        )


@dataclass
class CompletionResult:
    content: str
    usage: TokenUsage
    model: str
    finish_reason: str


@dataclass
class SpeechResult:
    """
    Narrated audio for a piece of text.

    estimated_duration_seconds comes from the character count, not from
    decoding the audio.
    """

    audio: bytes
    content_type: str
    model: str
    voice: str
    characters: int
    cost_usd: Decimal
    estimated_duration_seconds: int


def estimate_speech_seconds(text: str) -> int:
    return math.ceil(len(text) / CHARACTERS_PER_SECOND)


def _retry_after_seconds(error: openai.APIStatusError) -> int | None:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    try:
        return int(float(value)) if value else None
    except ValueError:
        return None


@contextmanager
def _translated_errors(operation: str) -> Iterator[None]:
    """Re-raise SDK exceptions as project exceptions once the SDK has given up."""
    try:
        yield
    except openai.RateLimitError as e:
        retry_after = _retry_after_seconds(e)
        logger.warning(
            f"OpenAI rate limit persisted through retries during {operation}",
            extra={"operation": operation, "retry_after": retry_after},
        )
        raise AtelierRateLimitError(
            message="OpenAI rate limit exceeded after retries",
            retry_after=retry_after,
        ) from e
    except openai.APIStatusError as e:
        logger.error(
            f"OpenAI {operation} failed with status {e.status_code}",
            extra={"operation": operation, "status_code": e.status_code},
        )
        raise ExternalServiceError(
            service=SERVICE_NAME,
            message=f"OpenAI API error: {e.message}",
            original_error=str(e),
        ) from e
    except openai.APIConnectionError as e:
        logger.error(
            f"OpenAI {operation} could not connect",
            extra={"operation": operation, "error": str(e)},
        )
        raise ExternalServiceError(
            service=SERVICE_NAME,
            message="OpenAI API call failed after retries",
            original_error=str(e),
        ) from e


class OpenAIClient:
    """
    Example:
        ```python
        client = OpenAIClient()
        result = client.complete(messages=[{"role": "user", "content": "Hello!"}])
        speech = client.synthesize_speech(result.content)
        ```
    """

    def __init__(
        self,
        api_key: str | None = None,
        settings: Settings | None = None,
        max_retries: int = 3,
        timeout: float = 120.0,
        sdk: openai.OpenAI | None = None,
    ) -> None:
        """
        Args:
            api_key: OpenAI API key (uses settings if not provided)
            settings: Application settings instance
            max_retries: Retries the SDK makes on transient failures
            timeout: Per-request timeout in seconds
            sdk: Preconfigured SDK client, mainly for tests
        """
        self._settings = settings or get_settings()
        self._client = sdk or openai.OpenAI(
            api_key=api_key or self._settings.openai_api_key,
            max_retries=max_retries,
            timeout=timeout,
        )

    @property
    def provider(self) -> str:
        return "openai"

    def _chat(
        self,
        operation: str,
        messages: list[dict[str, str]],
        model: str | None,
        system_message: str | None,
        **params: Any,
    ) -> CompletionResult:
        model = model or self._settings.openai_model_generation
        if system_message:
            messages = [{"role": "system", "content": system_message}, *messages]

        started = time.time()
        with _translated_errors(operation):
            response = self._client.chat.completions.create(
                model=model,
                messages=messages,  # type: ignore[arg-type]
                **params,
            )

        choice = response.choices[0]
        usage = (
            TokenUsage.priced(model, response.usage.prompt_tokens, response.usage.completion_tokens)
            if response.usage
            else TokenUsage(model=model)
        )

        logger.info(
            f"OpenAI {operation} finished",
            extra={
                "model": model,
                "elapsed_seconds": round(time.time() - started, 2),
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "estimated_cost_usd": float(usage.estimated_cost_usd),
            },
        )
        return CompletionResult(
            content=choice.message.content or "",
            usage=usage,
            model=model,
            finish_reason=choice.finish_reason or "unknown",
        )

    def complete(
        self,
        messages: list[dict[str, str]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_message: str | None = None,
    ) -> CompletionResult:
        """Plain-text chat completion."""
        return self._chat(
            "completion",
            messages,
            model,
            system_message,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    def complete_with_schema(
        self,
        messages: list[dict[str, str]],
        response_model: type[T],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_message: str | None = None,
    ) -> tuple[T, TokenUsage]:
        """
        JSON-mode completion parsed into response_model.

        The system message should describe the expected shape; JSON mode only
        guarantees syntactically valid JSON.

        Raises:
            ExternalServiceError: If the reply is not valid JSON for response_model
        """
        result = self._chat(
            "structured completion",
            messages,
            model,
            system_message,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )

        try:
            parsed = response_model.model_validate_json(result.content or "{}")
        except PydanticValidationError as e:
            logger.error(
                f"OpenAI reply did not match {response_model.__name__}",
                extra={"content": result.content[:500], "error_count": e.error_count()},
            )
            raise ExternalServiceError(
                service=SERVICE_NAME,
                message=f"Response validation failed for {response_model.__name__}",
                original_error=str(e),
            ) from e
        return parsed, result.usage

    def synthesize_speech(
        self,
        text: str,
        voice: str | None = None,
        model: str | None = None,
        instructions: str | None = None,
    ) -> SpeechResult:
        """
        Narrate text as MP3.

        Args:
            text: Text to narrate
            voice: Voice name (defaults to settings.openai_tts_voice)
            model: TTS model (defaults to settings.openai_tts_model)
            instructions: Optional delivery instructions for the voice
        """
        model = model or self._settings.openai_tts_model
        voice = voice or self._settings.openai_tts_voice

        params: dict[str, Any] = {
            "model": model,
            "voice": voice,
            "input": text,
            "response_format": "mp3",
        }
        if instructions:
            params["instructions"] = instructions

        with _translated_errors("speech synthesis"):
            audio = self._client.audio.speech.create(**params).content

        rate = Decimal(TTS_PRICING.get(model, TTS_PRICING["gpt-4o-mini-tts"]))
        cost = Decimal(len(text)) * rate / Decimal(1000)

        logger.info(
            "OpenAI speech synthesis finished",
            extra={
                "model": model,
                "voice": voice,
                "characters": len(text),
                "audio_bytes": len(audio),
                "estimated_cost_usd": float(cost),
            },
        )
        return SpeechResult(
            audio=audio,
            content_type="audio/mpeg",
            model=model,
            voice=voice,
            characters=len(text),
            cost_usd=cost,
            estimated_duration_seconds=estimate_speech_seconds(text),
        )


def get_openai_client(settings: Settings | None = None) -> OpenAIClient:
    """Factory function to create an OpenAI client."""
    return OpenAIClient(settings=settings)
