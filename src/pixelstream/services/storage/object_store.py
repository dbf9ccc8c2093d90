"""S3-compatible object storage client (Cloudflare R2 by default)."""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from pixelstream.core.config import Settings
from pixelstream.services.exceptions import StorageError

logger = structlog.get_logger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass
class UploadResult:
    url: str
    size_bytes: int


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> UploadResult: ...


class S3ObjectStore:
    """Uploads immutable public objects to an S3-compatible bucket."""

    def __init__(self, bucket_name: str, public_url: str, client: Any):
        """Initialize object store.

        Args:
            bucket_name: Target bucket (from R2_BUCKET_NAME)
            public_url: Public base URL serving the bucket (from R2_PUBLIC_URL)
            client: boto3 S3 client
        """
        self.bucket_name = bucket_name
        self.public_url = public_url.rstrip("/")
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ObjectStore":
        """Build a store for the configured R2 account."""
        client = boto3.client(
            "s3",
            endpoint_url=settings.r2_endpoint_url,
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            region_name="auto",
            config=Config(connect_timeout=5, read_timeout=60, max_pool_connections=25),
        )
        return cls(settings.r2_bucket_name, settings.r2_public_url, client)

    async def put(self, key: str, data: bytes, content_type: str) -> UploadResult:
        """Upload bytes under key.

        The boto3 client is synchronous, so the call runs in a worker thread.

        Returns:
            Public URL and byte size of the stored object

        Raises:
            StorageError: Upload failed
        """
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(
                "storage.upload_failed",
                key=key,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise StorageError(f"Upload failed for {key}: {e}") from e

        logger.debug("storage.uploaded", key=key, size_bytes=len(data))
        return UploadResult(url=f"{self.public_url}/{key}", size_bytes=len(data))
