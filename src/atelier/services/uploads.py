"""
Provisional upload service.

Clients upload media before the record that will own it exists. Each
upload is tracked as a pending ProvisionalResource with a deadline; the
owning flow commits it, or the reaper removes it once the deadline passes.
A pending resource past its deadline is never served.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from atelier.core.config import Settings, get_settings
from atelier.core.exceptions import NotFoundError, ValidationError
from atelier.integrations.storage_client import (
    StorageClient,
    get_storage_client,
    provisional_upload_key,
)
from atelier.models import ProvisionalResource, ProvisionalResourceStatus
from atelier.models.base import utcnow

logger = logging.getLogger(__name__)

UPLOAD_URL_EXPIRES_SECONDS = 900


@dataclass
class PendingUpload:
    """A freshly created provisional resource and where to PUT its bytes."""

    resource: ProvisionalResource
    upload_url: str


class ProvisionalUploadService:
    """
    Creates, serves and commits provisional uploads.

    Example:
        ```python
        service = ProvisionalUploadService(db)
        pending = service.create_pending_upload(
            owner_id="user-1",
            upload_session_id="sess-42",
            filename="cover.png",
            mime_type="image/png",
        )
        # client PUTs to pending.upload_url, then later:
        service.commit_session("sess-42", owner_id="user-1")
        ```
    """

    def __init__(
        self,
        db: Session,
        storage: StorageClient | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._storage = storage
        self._clock = clock

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage_client(self._settings)
        return self._storage

    def create_pending_upload(
        self,
        owner_id: str,
        upload_session_id: str,
        filename: str,
        mime_type: str | None = None,
        file_size_bytes: int | None = None,
    ) -> PendingUpload:
        """
        Register an upload and issue a pre-signed PUT URL for it.

        Args:
            owner_id: Uploading user
            upload_session_id: Client session grouping the uploads
            filename: Original file name, used for the key extension
            mime_type: Declared MIME type
            file_size_bytes: Declared size

        Returns:
            PendingUpload with the resource and its upload URL
        """
        if not upload_session_id:
            raise ValidationError(message="Upload session id is required", field="upload_session_id")

        resource_id = uuid4()
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
        key = provisional_upload_key(owner_id, upload_session_id, resource_id, extension)
        bucket = self.storage.default_assets_bucket

        resource = ProvisionalResource(
            id=resource_id,
            owner_id=owner_id,
            upload_session_id=upload_session_id,
            storage_bucket=bucket,
            storage_key=key,
            mime_type=mime_type,
            file_size_bytes=file_size_bytes,
            status=ProvisionalResourceStatus.PENDING,
            expires_at=self._clock() + timedelta(hours=self._settings.provisional_ttl_hours),
        )
        self._db.add(resource)
        self._db.commit()

        upload_url = self.storage.presigned_url(
            bucket,
            key,
            expires_in=UPLOAD_URL_EXPIRES_SECONDS,
            for_upload=True,
        )

        logger.info(
            "Created provisional upload",
            extra={
                "resource_id": str(resource_id),
                "upload_session_id": upload_session_id,
                "expires_at": resource.expires_at.isoformat(),
            },
        )
        return PendingUpload(resource=resource, upload_url=upload_url)

    def get_servable(self, resource_id: UUID) -> ProvisionalResource:
        """
        Fetch a resource that may be served to clients.

        Raises:
            NotFoundError: If missing, expired, or pending past its deadline
        """
        resource = self._db.get(ProvisionalResource, resource_id)
        if (
            resource is None
            or resource.status == ProvisionalResourceStatus.EXPIRED
            or resource.is_expired(self._clock())
        ):
            raise NotFoundError("ProvisionalResource", str(resource_id))
        return resource

    def find_pending_by_session(self, upload_session_id: str) -> list[ProvisionalResource]:
        """Pending resources for a session that are still within their deadline."""
        return list(
            self._db.scalars(
                select(ProvisionalResource)
                .where(
                    ProvisionalResource.upload_session_id == upload_session_id,
                    ProvisionalResource.status == ProvisionalResourceStatus.PENDING,
                    ProvisionalResource.expires_at > self._clock(),
                )
                .order_by(ProvisionalResource.created_at)
            )
        )

    def expire_overdue(self, upload_session_id: str | None = None) -> int:
        """
        Mark pending resources past their deadline as expired.

        Args:
            upload_session_id: Restrict to one session; None for all

        Returns:
            Number of rows updated
        """
        stmt = (
            update(ProvisionalResource)
            .where(
                ProvisionalResource.status == ProvisionalResourceStatus.PENDING,
                ProvisionalResource.expires_at <= self._clock(),
            )
            .values(status=ProvisionalResourceStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        if upload_session_id is not None:
            stmt = stmt.where(ProvisionalResource.upload_session_id == upload_session_id)
        return self._db.execute(stmt).rowcount

    def commit_session(self, upload_session_id: str, owner_id: str | None = None) -> list[ProvisionalResource]:
        """
        Commit every live pending upload in a session.

        Overdue resources in the session are marked expired first, so a
        resource past its deadline can never be committed.

        Args:
            upload_session_id: Client session to commit
            owner_id: When given, only that owner's uploads are committed

        Returns:
            The committed resources
        """
        expired = self.expire_overdue(upload_session_id)

        resources = self.find_pending_by_session(upload_session_id)
        if owner_id is not None:
            resources = [r for r in resources if r.owner_id == owner_id]

        now = self._clock()
        for resource in resources:
            resource.status = ProvisionalResourceStatus.COMMITTED
            resource.committed_at = now
            resource.expires_at = None

        self._db.commit()

        logger.info(
            "Committed provisional uploads",
            extra={
                "upload_session_id": upload_session_id,
                "committed": len(resources),
                "expired": expired,
            },
        )
        return resources


__all__ = ["ProvisionalUploadService", "PendingUpload"]
