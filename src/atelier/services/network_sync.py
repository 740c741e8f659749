"""
Network sync: pulls a connected account's home timeline into NetworkPost rows.

The timeline endpoint has a small per-user quota, so every call is gated by
the shared rate limiter keyed on the platform's user id. Hitting the quota
is flow control: the job reschedules itself for when a slot frees up and
reports success.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from atelier.core.database import get_db_session
from atelier.core.exceptions import NotFoundError, RateLimitError
from atelier.core.rate_limit import RateLimiterBackend, get_rate_limiter
from atelier.integrations.social_client import (
    TIMELINE_ENDPOINT,
    SocialClient,
    TimelinePost,
    get_social_client,
)
from atelier.models import ConnectedAccount, NetworkPost
from atelier.models.base import utcnow
from atelier.workers.celery_app import QUEUE_SYNC
from atelier.workers.queue import SYNC_NETWORK_TASK, enqueue
from atelier.workers.utils import to_uuid

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractContextManager[Session]]

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def sync_job_id(connected_account_id: UUID | str) -> str:
    """Deterministic job id shared by every reschedule of one account's sync."""
    return f"sync-network-{connected_account_id}"


@dataclass
class SyncResult:
    """Outcome of one sync attempt."""

    connected_account_id: str
    rescheduled: bool = False
    retry_after: int | None = None
    posts_synced: int = 0
    task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected_account_id": self.connected_account_id,
            "rescheduled": self.rescheduled,
            "retry_after": self.retry_after,
            "posts_synced": self.posts_synced,
            "task_id": self.task_id,
        }


class NetworkSyncService:
    """
    Syncs timelines for connected accounts under the shared rate limiter.

    Example:
        ```python
        result = NetworkSyncService().sync_account(account_id)
        if result.rescheduled:
            print(f"retrying in {result.retry_after}s")
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope = get_db_session,
        social_client: SocialClient | None = None,
        rate_limiter: RateLimiterBackend | None = None,
        enqueue_fn: Callable[..., str | None] = enqueue,
    ) -> None:
        self._session_scope = session_scope
        self._social = social_client
        self._limiter = rate_limiter or get_rate_limiter()
        self._enqueue = enqueue_fn

    @property
    def social(self) -> SocialClient:
        if self._social is None:
            self._social = get_social_client()
        return self._social

    def sync_account(self, connected_account_id: UUID | str) -> SyncResult:
        """
        Fetch and upsert the home timeline for one account.

        Args:
            connected_account_id: Internal account id

        Returns:
            SyncResult; rescheduled=True when the quota was exhausted

        Raises:
            NotFoundError: If the account does not exist
            ExternalServiceError: If the platform call fails
        """
        account_id = to_uuid(connected_account_id)

        with self._session_scope() as db:
            account = db.get(ConnectedAccount, account_id)
            if account is None:
                raise NotFoundError("ConnectedAccount", str(account_id))
            external_user_id = account.external_user_id
            access_token = account.access_token

        check = self._limiter.check_rate_limit(TIMELINE_ENDPOINT, external_user_id)
        if not check.allowed:
            return self._reschedule(account_id, external_user_id, check.retry_after_seconds or 1)

        try:
            posts = self.social.get_home_timeline(external_user_id, access_token=access_token)
        except RateLimitError as e:
            # Upstream disagrees with our accounting; back off the same way
            return self._reschedule(account_id, external_user_id, e.retry_after or 60)
        finally:
            # Failed calls still spend upstream quota
            self._limiter.record_request(TIMELINE_ENDPOINT, external_user_id)

        with self._session_scope() as db:
            synced = upsert_posts(db, account_id, posts)
            account = db.get(ConnectedAccount, account_id)
            if account is not None:
                account.last_synced_at = utcnow()

        logger.info(
            "Timeline synced",
            extra={
                "connected_account_id": str(account_id),
                "external_user_id": external_user_id,
                "posts_synced": synced,
            },
        )
        return SyncResult(connected_account_id=str(account_id), posts_synced=synced)

    def _reschedule(self, account_id: UUID, external_user_id: str, retry_after: int) -> SyncResult:
        task_id = self._enqueue(
            QUEUE_SYNC,
            SYNC_NETWORK_TASK,
            {"connected_account_id": str(account_id)},
            job_id=sync_job_id(account_id),
            delay_ms=retry_after * 1000,
        )
        logger.info(
            "Timeline sync rate limited, rescheduled",
            extra={
                "connected_account_id": str(account_id),
                "external_user_id": external_user_id,
                "retry_after": retry_after,
                "task_id": task_id,
            },
        )
        return SyncResult(
            connected_account_id=str(account_id),
            rescheduled=True,
            retry_after=retry_after,
            task_id=task_id,
        )


def upsert_posts(db: Session, connected_account_id: UUID, posts: list[TimelinePost]) -> int:
    """
    Insert or update timeline posts for an account.

    Uses INSERT .. ON CONFLICT DO UPDATE on the (account, post id) unique
    key so concurrent syncs of the same account never collide.

    Returns:
        Number of posts written
    """
    if not posts:
        return 0

    dialect = db.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Post upsert is not supported on '{dialect}'")

    now = utcnow()
    rows = [
        {
            "id": uuid4(),
            "connected_account_id": connected_account_id,
            "external_post_id": post.external_post_id,
            "author_external_id": post.author_external_id,
            "text": post.text,
            "posted_at": post.posted_at,
            "raw": post.raw,
            "created_at": now,
            "updated_at": now,
        }
        # Last occurrence wins if the platform repeats a post in one page
        for post in {p.external_post_id: p for p in posts}.values()
    ]

    stmt = insert(NetworkPost).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["connected_account_id", "external_post_id"],
        set_={
            "author_external_id": stmt.excluded.author_external_id,
            "text": stmt.excluded.text,
            "posted_at": stmt.excluded.posted_at,
            "raw": stmt.excluded.raw,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)
    return len(rows)


__all__ = ["NetworkSyncService", "SyncResult", "sync_job_id", "upsert_posts"]
