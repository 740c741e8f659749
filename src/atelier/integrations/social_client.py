"""
Social platform API client.

Fetches timeline data for connected accounts. Quotas on these endpoints are
enforced upstream per platform user, so callers must gate every call through
the shared rate limiter using the account's external user id.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from atelier.core.config import Settings, get_settings
from atelier.integrations.base_client import SyncBaseHTTPClient

logger = logging.getLogger(__name__)

# Rate limiter endpoint names for the calls this client makes
TIMELINE_ENDPOINT = "timeline"


@dataclass
class TimelinePost:
    """A single post as returned by the platform."""

    external_post_id: str
    author_external_id: str | None
    text: str | None
    posted_at: datetime | None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "TimelinePost":
        created_at = data.get("created_at")
        posted_at = None
        if created_at:
            posted_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))

        return cls(
            external_post_id=str(data["id"]),
            author_external_id=data.get("author_id"),
            text=data.get("text"),
            posted_at=posted_at,
            raw=data,
        )


class SocialClient(SyncBaseHTTPClient):
    """
    Client for the social platform's v2 REST API.

    Defaults to a single attempt per call: each attempt spends per-user quota,
    so retries belong to the rate-limited job, not to this client.

    Example:
        ```python
        client = SocialClient()
        posts = client.get_home_timeline(account.external_user_id, account.access_token)
        ```
    """

    def __init__(
        self,
        bearer_token: str | None = None,
        settings: Settings | None = None,
        base_url: str | None = None,
        max_retries: int = 1,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(
            base_url=base_url or settings.social_api_url,
            api_key=bearer_token or settings.social_api_bearer_token,
            settings=settings,
            max_retries=max_retries,
            timeout=timeout,
            transport=transport,
            sleep=sleep,
        )

    @property
    def service_name(self) -> str:
        return "Social"

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def get_home_timeline(
        self,
        external_user_id: str,
        access_token: str | None = None,
        max_results: int = 100,
    ) -> list[TimelinePost]:
        """
        Fetch the reverse-chronological home timeline for a user.

        Args:
            external_user_id: Platform user id
            access_token: User-context token; falls back to the app bearer token
            max_results: Page size requested from the platform

        Returns:
            List of TimelinePost, newest first
        """
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        response = self._get(
            f"users/{external_user_id}/timelines/reverse_chronological",
            params={
                "max_results": max_results,
                "tweet.fields": "created_at,author_id",
            },
            headers=headers,
        )

        posts = [TimelinePost.from_api_response(item) for item in response.json().get("data", [])]

        logger.info(
            "Fetched home timeline",
            extra={"external_user_id": external_user_id, "post_count": len(posts)},
        )
        return posts


def get_social_client(settings: Settings | None = None) -> SocialClient:
    """Factory function to create a social platform client."""
    return SocialClient(settings=settings)
