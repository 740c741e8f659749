"""
S3/MinIO storage for derived assets and provisional uploads.

Two key layouts live in the assets bucket:

    artifacts/{artifact_id}/{kind}/{asset_id}.{ext}      derived assets
    uploads/{owner_id}/{session_id}/{resource_id}.{ext}  provisional uploads

Both end in a fresh UUID, so concurrent writers never share a key and a
losing writer can delete its own object without touching the winner's.
"""

import logging
import mimetypes
from dataclasses import dataclass
from typing import NoReturn
from uuid import UUID

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from atelier.core.config import Settings, get_settings
from atelier.core.exceptions import ExternalServiceError, NotFoundError

logger = logging.getLogger(__name__)

SERVICE_NAME = "S3/MinIO"
MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "404"})


def artifact_asset_key(artifact_id: UUID, kind: str, asset_id: UUID, extension: str) -> str:
    return f"artifacts/{artifact_id}/{kind}/{asset_id}.{extension}"


def provisional_upload_key(
    owner_id: str, upload_session_id: str, resource_id: UUID, extension: str
) -> str:
    return f"uploads/{owner_id}/{upload_session_id}/{resource_id}.{extension}"


@dataclass
class UploadResult:
    """Where an object landed and what was stored."""

    bucket: str
    key: str
    etag: str
    content_type: str
    file_size_bytes: int

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class StorageClient:
    """
    Thin boto3 wrapper that speaks in the project's exception types.

    Example:
        ```python
        storage = StorageClient()
        result = storage.upload_artifact_asset(
            data=audio_bytes,
            artifact_id=artifact.id,
            kind="audio",
            asset_id=asset_id,
            file_extension="mp3",
            content_type="audio/mpeg",
        )
        storage.delete_file(result.bucket, result.key)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        endpoint_url = endpoint_url or self._settings.s3_endpoint_url
        region = region or self._settings.s3_region

        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key or self._settings.s3_access_key,
            aws_secret_access_key=secret_key or self._settings.s3_secret_key,
            region_name=region,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )

        logger.debug(
            "Storage client initialized",
            extra={"endpoint_url": endpoint_url, "region": region},
        )

    @property
    def default_assets_bucket(self) -> str:
        return self._settings.s3_bucket_assets

    def _fail(self, operation: str, bucket: str, key: str, error: ClientError) -> NoReturn:
        """Translate a botocore error into NotFoundError or ExternalServiceError."""
        code = error.response.get("Error", {}).get("Code", "Unknown")
        message = error.response.get("Error", {}).get("Message", str(error))

        if code in MISSING_OBJECT_CODES:
            logger.warning(
                f"S3 {operation}: object not found",
                extra={"bucket": bucket, "key": key},
            )
            raise NotFoundError(resource_type="S3Object", resource_id=f"{bucket}/{key}") from error

        logger.error(
            f"S3 {operation} failed",
            extra={"bucket": bucket, "key": key, "error_code": code, "error": message},
        )
        raise ExternalServiceError(
            service=SERVICE_NAME,
            message=f"S3 {operation} failed: {message}",
            original_error=str(error),
        ) from error

    def upload_file(
        self,
        data: bytes,
        bucket: str,
        key: str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> UploadResult:
        """
        Put an object, guessing the content type from the key when not given.

        Raises:
            ExternalServiceError: If the put fails
        """
        content_type = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"

        try:
            response = self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except ClientError as e:
            self._fail("upload", bucket, key, e)

        etag = response.get("ETag", "").strip('"')
        logger.info(
            "File uploaded",
            extra={"bucket": bucket, "key": key, "size_bytes": len(data), "etag": etag},
        )
        return UploadResult(
            bucket=bucket,
            key=key,
            etag=etag,
            content_type=content_type,
            file_size_bytes=len(data),
        )

    def upload_artifact_asset(
        self,
        data: bytes,
        artifact_id: UUID,
        kind: str,
        asset_id: UUID,
        file_extension: str,
        content_type: str | None = None,
    ) -> UploadResult:
        """Store a derived asset under its artifact and kind, tagged for tracing."""
        return self.upload_file(
            data=data,
            bucket=self.default_assets_bucket,
            key=artifact_asset_key(artifact_id, kind, asset_id, file_extension),
            content_type=content_type,
            metadata={
                "artifact_id": str(artifact_id),
                "kind": kind,
                "asset_id": str(asset_id),
            },
        )

    def download_file(self, bucket: str, key: str) -> bytes:
        """
        Raises:
            NotFoundError: If the object or bucket does not exist
            ExternalServiceError: For any other S3 failure
        """
        try:
            data = self._client.get_object(Bucket=bucket, Key=key)["Body"].read()
        except ClientError as e:
            self._fail("download", bucket, key, e)

        logger.info(
            "File downloaded",
            extra={"bucket": bucket, "key": key, "size_bytes": len(data)},
        )
        return data

    def presigned_url(
        self,
        bucket: str,
        key: str,
        *,
        expires_in: int = 3600,
        for_upload: bool = False,
    ) -> str:
        """
        Sign a URL the render service can read from, or a client can PUT to.

        Raises:
            ExternalServiceError: If signing fails
        """
        method = "put_object" if for_upload else "get_object"
        try:
            return self._client.generate_presigned_url(
                ClientMethod=method,
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            self._fail("presign", bucket, key, e)

    def delete_file(self, bucket: str, key: str) -> None:
        """
        Delete an object. A key that is already gone counts as deleted.

        Raises:
            ExternalServiceError: If deletion fails
        """
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            self._fail("delete", bucket, key, e)

        logger.info("File deleted", extra={"bucket": bucket, "key": key})


def get_storage_client(settings: Settings | None = None) -> StorageClient:
    """Factory function to create a storage client."""
    return StorageClient(settings=settings)
