"""
ProvisionalResource model for uploads awaiting commitment.

A provisional resource is a blob uploaded ahead of the record that will own
it. If it is not committed before expires_at it is never served again and
the reaper eventually purges it from storage and from the database.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Enum, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from atelier.models.base import Base, TimestampMixin, as_utc, enum_values
from atelier.models.enums import ProvisionalResourceStatus


class ProvisionalResource(Base, TimestampMixin):
    """
    Uploaded blob awaiting association with an owner.

    Attributes:
        id: Unique identifier (UUID)
        owner_id: Identifier of the uploading user
        upload_session_id: Client-side session grouping related uploads
        storage_bucket: Bucket name for S3/MinIO
        storage_key: Object key within bucket
        mime_type: MIME type of the upload
        file_size_bytes: File size in bytes
        status: pending, committed or expired
        expires_at: Deadline for commitment (null once committed)
        committed_at: When the resource was committed
    """

    __tablename__ = "provisional_resources"
    __table_args__ = (Index("ix_provisional_resources_status_expires_at", "status", "expires_at"),)

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    owner_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    upload_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    storage_bucket: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1000), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    status: Mapped[ProvisionalResourceStatus] = mapped_column(
        Enum(
            ProvisionalResourceStatus,
            name="provisional_resource_status",
            native_enum=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ProvisionalResourceStatus.PENDING,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ProvisionalResource {self.id} [{self.status.value}]>"

    def is_expired(self, now: datetime) -> bool:
        """Check whether a pending resource has passed its deadline."""
        expires_at = as_utc(self.expires_at)
        return (
            self.status == ProvisionalResourceStatus.PENDING
            and expires_at is not None
            and expires_at <= now
        )
