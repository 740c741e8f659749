"""
Tests for third-party client wrappers.

boto3 and the OpenAI SDK are replaced with MagicMocks and HTTP clients run
against httpx.MockTransport, so no network access is needed.
"""

import time
from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4

import httpx
import openai
import pytest
from botocore.exceptions import ClientError
from pydantic import BaseModel

from atelier.core.exceptions import ExternalServiceError, NotFoundError, RateLimitError
from atelier.integrations.base_client import retry_hint_seconds
from atelier.integrations.openai_client import OpenAIClient
from atelier.integrations.social_client import SocialClient
from atelier.integrations.storage_client import StorageClient


class TestStorageClient:
    """Tests for key layout and metadata."""

    @pytest.fixture
    def s3(self) -> MagicMock:
        with patch("atelier.integrations.storage_client.boto3.client") as factory:
            client = MagicMock()
            client.put_object.return_value = {"ETag": '"abc123"'}
            factory.return_value = client
            yield client

    def test_artifact_asset_key_is_unique_per_asset(self, s3, settings) -> None:
        storage = StorageClient(settings=settings)
        artifact_id, asset_id = uuid4(), uuid4()

        result = storage.upload_artifact_asset(
            data=b"hello",
            artifact_id=artifact_id,
            kind="text",
            asset_id=asset_id,
            file_extension="txt",
            content_type="text/plain",
        )

        assert result.key == f"artifacts/{artifact_id}/text/{asset_id}.txt"
        assert result.bucket == settings.s3_bucket_assets
        assert result.etag == "abc123"
        assert result.file_size_bytes == 5
        metadata = s3.put_object.call_args.kwargs["Metadata"]
        assert metadata == {"artifact_id": str(artifact_id), "kind": "text", "asset_id": str(asset_id)}
        assert result.uri == f"s3://{settings.s3_bucket_assets}/{result.key}"

    def test_missing_object_is_not_found(self, s3, settings) -> None:
        s3.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "gone"}}, "GetObject"
        )

        with pytest.raises(NotFoundError):
            StorageClient(settings=settings).download_file("bucket", "artifacts/x.txt")

    def test_other_errors_are_external(self, s3, settings) -> None:
        s3.delete_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DeleteObject"
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            StorageClient(settings=settings).delete_file("bucket", "uploads/x.png")

        assert "denied" in exc_info.value.message


class TestSocialClient:
    """Tests for the timeline endpoint."""

    def test_parses_timeline(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/users/ext-42/timelines/reverse_chronological")
            assert request.headers["Authorization"] == "Bearer user-token"
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "id": "1001",
                            "author_id": "a-1",
                            "text": "first",
                            "created_at": "2026-03-01T12:00:00.000Z",
                        },
                        {"id": "1002", "text": "no date"},
                    ]
                },
            )

        client = SocialClient(settings=settings, transport=httpx.MockTransport(handler))

        posts = client.get_home_timeline("ext-42", access_token="user-token")

        assert [p.external_post_id for p in posts] == ["1001", "1002"]
        assert posts[0].posted_at.year == 2026
        assert posts[0].posted_at.tzinfo is not None
        assert posts[1].posted_at is None
        assert posts[1].raw == {"id": "1002", "text": "no date"}

    def test_client_error_raises(self, settings) -> None:
        client = SocialClient(
            settings=settings,
            transport=httpx.MockTransport(lambda request: httpx.Response(403, json={"title": "Forbidden"})),
        )

        with pytest.raises(ExternalServiceError):
            client.get_home_timeline("ext-42")


class TestRetries:
    """Tests for the shared retry loop."""

    def _client(self, settings, handler, sleeps: list[float], max_retries: int = 3) -> SocialClient:
        return SocialClient(
            settings=settings,
            transport=httpx.MockTransport(handler),
            sleep=sleeps.append,
            max_retries=max_retries,
        )

    def test_server_error_is_retried(self, settings) -> None:
        responses = iter([httpx.Response(503), httpx.Response(200, json={"data": []})])
        sleeps: list[float] = []
        client = self._client(settings, lambda request: next(responses), sleeps)

        assert client.get_home_timeline("ext-42") == []
        assert len(sleeps) == 1
        assert client.total_usage.request_count == 2

    def test_server_hint_sets_wait(self, settings) -> None:
        responses = iter(
            [
                httpx.Response(503, headers={"Retry-After": "7"}),
                httpx.Response(200, json={"data": []}),
            ]
        )
        sleeps: list[float] = []
        client = self._client(settings, lambda request: next(responses), sleeps)

        client.get_home_timeline("ext-42")

        assert sleeps == [7.0]

    def test_429_is_raised_without_waiting(self, settings) -> None:
        """A 429 goes straight back to the caller so the job can reschedule."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "12"})

        sleeps: list[float] = []
        client = self._client(settings, handler, sleeps)

        with pytest.raises(RateLimitError) as exc_info:
            client.get_home_timeline("ext-42")

        assert exc_info.value.retry_after == 12
        assert sleeps == []
        assert len(calls) == 1

    def test_429_reset_header_becomes_retry_after(self, settings) -> None:
        reset_at = str(int(time.time()) + 30)
        sleeps: list[float] = []
        client = self._client(
            settings,
            lambda request: httpx.Response(429, headers={"x-rate-limit-reset": reset_at}),
            sleeps,
        )

        with pytest.raises(RateLimitError) as exc_info:
            client.get_home_timeline("ext-42")

        assert 25 <= exc_info.value.retry_after <= 30
        assert sleeps == []

    def test_transport_errors_exhaust_budget(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        sleeps: list[float] = []
        client = self._client(settings, handler, sleeps)

        with pytest.raises(ExternalServiceError) as exc_info:
            client.get_home_timeline("ext-42")

        assert "ConnectError" in exc_info.value.details["original_error"]
        assert len(sleeps) == 2

    def test_social_client_makes_one_attempt_by_default(self, settings) -> None:
        sleeps: list[float] = []
        client = SocialClient(
            settings=settings,
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            sleep=sleeps.append,
        )

        with pytest.raises(ExternalServiceError):
            client.get_home_timeline("ext-42")

        assert client.total_usage.request_count == 1
        assert sleeps == []


class TestRetryHint:
    def test_retry_after_wins(self) -> None:
        response = httpx.Response(429, headers={"Retry-After": "7", "x-rate-limit-reset": "0"})
        assert retry_hint_seconds(response) == 7.0

    def test_past_reset_is_zero(self) -> None:
        response = httpx.Response(429, headers={"x-rate-limit-reset": "100"})
        assert retry_hint_seconds(response, now=200.0) == 0.0

    def test_no_hint(self) -> None:
        assert retry_hint_seconds(httpx.Response(503)) is None


class Outline(BaseModel):
    title: str
    beats: list[str]


class TestOpenAIClient:
    """Tests for pricing, structured output and error translation."""

    @pytest.fixture
    def sdk(self) -> MagicMock:
        return MagicMock()

    def _reply(self, content: str, prompt_tokens: int = 1000, completion_tokens: int = 1000):
        response = MagicMock()
        response.choices = [MagicMock(message=MagicMock(content=content), finish_reason="stop")]
        response.usage = MagicMock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        return response

    def test_complete_prices_usage(self, sdk, settings) -> None:
        sdk.chat.completions.create.return_value = self._reply("Hello.")
        client = OpenAIClient(settings=settings, sdk=sdk)

        result = client.complete(
            messages=[{"role": "user", "content": "hi"}],
            model="gpt-4o-mini",
            system_message="Be brief.",
        )

        assert result.content == "Hello."
        assert result.usage.total_tokens == 2000
        assert result.usage.estimated_cost_usd == Decimal("0.00075")
        sent = sdk.chat.completions.create.call_args.kwargs["messages"]
        assert sent[0] == {"role": "system", "content": "Be brief."}

    def test_schema_reply_is_validated(self, sdk, settings) -> None:
        sdk.chat.completions.create.return_value = self._reply('{"title": "Tide", "beats": ["a", "b"]}')
        client = OpenAIClient(settings=settings, sdk=sdk)

        outline, usage = client.complete_with_schema(
            messages=[{"role": "user", "content": "outline"}], response_model=Outline
        )

        assert outline == Outline(title="Tide", beats=["a", "b"])
        assert usage.input_tokens == 1000
        assert sdk.chat.completions.create.call_args.kwargs["response_format"] == {"type": "json_object"}

    def test_schema_mismatch_raises(self, sdk, settings) -> None:
        sdk.chat.completions.create.return_value = self._reply('{"title": "Tide"}')
        client = OpenAIClient(settings=settings, sdk=sdk)

        with pytest.raises(ExternalServiceError):
            client.complete_with_schema(messages=[], response_model=Outline)

    def test_rate_limit_is_translated(self, sdk, settings) -> None:
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        response = httpx.Response(429, headers={"retry-after": "20"}, request=request)
        sdk.chat.completions.create.side_effect = openai.RateLimitError(
            "slow down", response=response, body=None
        )
        client = OpenAIClient(settings=settings, sdk=sdk)

        with pytest.raises(RateLimitError) as exc_info:
            client.complete(messages=[])

        assert exc_info.value.retry_after == 20

    def test_speech_cost_by_characters(self, sdk, settings) -> None:
        sdk.audio.speech.create.return_value = MagicMock(content=b"mp3")
        client = OpenAIClient(settings=settings, sdk=sdk)

        speech = client.synthesize_speech("x" * 2000, model="tts-1")

        assert speech.audio == b"mp3"
        assert speech.cost_usd == Decimal("0.03")
        assert speech.estimated_duration_seconds == 167
