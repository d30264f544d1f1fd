"""
S3 Blob Store — Owner-Partitioned

Every object is stored under:
    s3://<BUCKET>/owners/<owner_id>/<resource_type>/<object_name>

The prefix is always built server-side from the verified owner id and a
server-generated object name; no client-supplied path ever reaches a key.

Lifecycle:
  - One S3StorageService is constructed per process (FastAPI lifespan /
    Celery worker context) and passed by reference to whoever needs it.
  - Raw uploads and page previews are immutable once written.
  - The ingestion workflow only hard-deletes orphaned page previews from an
    abandoned partial preview set; documents themselves are never deleted here.
  - Every botocore failure surfaces as StorageError (cause kept for logs).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from precision_pdf.core.config import Settings
from precision_pdf.core.errors import StorageError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resource types: used to partition the S3 prefix
# ---------------------------------------------------------------------------

class ResourceType(str, Enum):
    DOCUMENT   = "documents"     # raw uploaded files (PDF, JPEG, PNG)
    PAGE_IMAGE = "page-images"   # rasterized PNG previews, one per page


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class S3Object:
    """Represents a stored object — returned by put_object."""
    owner_id:     str
    resource:     ResourceType
    key:          str          # full S3 key including prefix
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


@dataclass(frozen=True)
class PresignedUrl:
    url:        str
    expires_in: int   # seconds
    method:     str   # GET


def object_key(owner_id: str, resource: ResourceType, name: str) -> str:
    """
    Build an owner-scoped S3 key.
    Pattern:  owners/<owner_id>/<resource>/<name>
    """
    safe_owner = owner_id.replace("/", "_").replace("..", "_")
    safe_name = name.replace("/", "_").replace("..", "_")
    return f"owners/{safe_owner}/{resource.value}/{safe_name}"


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3StorageService:
    """Async S3 operations against the documents bucket."""

    def __init__(self, cfg: Settings) -> None:
        self._cfg = cfg
        self._bucket = cfg.s3_bucket
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._bucket

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": self._cfg.aws_region}
        if self._cfg.s3_endpoint_url:
            # LocalStack / MinIO in development
            kwargs["endpoint_url"] = self._cfg.s3_endpoint_url
        if self._cfg.aws_access_key_id and self._cfg.aws_secret_access_key:
            kwargs["aws_access_key_id"] = self._cfg.aws_access_key_id
            kwargs["aws_secret_access_key"] = self._cfg.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put_object(
        self,
        owner_id:     str,
        resource:     ResourceType,
        name:         str,
        body:         bytes,
        content_type: str,
        metadata:     dict[str, str] | None = None,
    ) -> S3Object:
        """
        Upload an object under the owner's prefix.

        Raises:
            StorageError: the PutObject call failed.
        """
        key = object_key(owner_id, resource, name)
        try:
            async with self._client() as s3:
                resp = await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                    Metadata={
                        "owner_id": owner_id,
                        "resource": resource.value,
                        **(metadata or {}),
                    },
                )
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 upload failed | owner=%s key=%s error=%s", owner_id, key, exc)
            raise StorageError(f"put_object {key}: {exc}") from exc

        logger.info(
            "S3 upload ok | owner=%s resource=%s key=%s size=%d",
            owner_id, resource.value, key, len(body),
        )

        return S3Object(
            owner_id=owner_id,
            resource=resource,
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_object(self, key: str) -> bytes:
        """
        Download an object by its stored key.

        Raises:
            FileNotFoundError: no such key.
            StorageError:      any other S3 failure.
        """
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
        except ClientError as exc:
            code = exc.response["Error"]["Code"]
            if code in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"Object not found: {key}") from exc
            raise StorageError(f"get_object {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"get_object {key}: {exc}") from exc

    async def delete_object(self, key: str) -> None:
        """Permanently remove an object."""
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"delete_object {key}: {exc}") from exc
        logger.warning("S3 hard delete | key=%s", key)

    async def get_object_url(self, key: str, expires_in: int | None = None) -> PresignedUrl:
        """
        Generate a short-lived presigned GET URL for one exact object key.
        """
        ttl = expires_in or self._cfg.presigned_url_ttl_seconds
        try:
            async with self._client() as s3:
                url = await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self._bucket, "Key": key},
                    ExpiresIn=ttl,
                )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"presign {key}: {exc}") from exc
        return PresignedUrl(url=url, expires_in=ttl, method="GET")
