"""
ConnectedAccount and NetworkPost models for social platform sync.

A connected account links an owner to an external platform identity. The
network sync job pulls that identity's timeline into NetworkPost rows,
subject to the platform's per-account quotas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from atelier.models.base import Base, JSONType, TimestampMixin


class ConnectedAccount(Base, TimestampMixin):
    """
    A linked social platform account.

    Attributes:
        id: Unique identifier (UUID)
        owner_id: Identifier of the owning user
        platform: Platform name (e.g. "twitter")
        external_user_id: The platform's own user id; rate limits key on this
        handle: Display handle on the platform
        access_token: Token used for user-context calls (provisioned elsewhere)
        last_synced_at: When the last successful sync finished
    """

    __tablename__ = "connected_accounts"
    __table_args__ = (UniqueConstraint("platform", "external_user_id"),)

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    owner_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False, default="twitter")
    external_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    posts: Mapped[list["NetworkPost"]] = relationship(
        "NetworkPost",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<ConnectedAccount {self.id} [{self.platform}:{self.external_user_id}]>"


class NetworkPost(Base, TimestampMixin):
    """
    A timeline entry fetched for a connected account.

    Rows are upserted on (connected_account_id, external_post_id), so a
    repeated sync updates rather than duplicates.
    """

    __tablename__ = "network_posts"
    __table_args__ = (UniqueConstraint("connected_account_id", "external_post_id"),)

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    connected_account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("connected_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_post_id: Mapped[str] = mapped_column(String(255), nullable=False)
    author_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    account: Mapped["ConnectedAccount"] = relationship("ConnectedAccount", back_populates="posts")

    def __repr__(self) -> str:
        return f"<NetworkPost {self.external_post_id}>"
