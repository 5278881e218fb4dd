# storage/blob_store.py
# ============================================================================
# DIGITAL CARD BACKEND — BLOB STORE
# ============================================================================
# Durable storage for uploaded card media, returning public locators.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = structlog.get_logger(component="blob_store")


class BlobStoreError(RuntimeError):
    """A blob could not be written."""


class IBlobStore(ABC):
    """Blob storage interface"""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return their public URL."""
        pass


class InMemoryBlobStore(IBlobStore):
    """Keeps blobs in a dict; URLs point at a fake public host."""

    def __init__(self, base_url: str = "https://blobs.local"):
        self.base_url = base_url.rstrip("/")
        self.blobs: Dict[str, Tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        async with self._lock:
            if key in self.blobs:
                raise BlobStoreError(f"Blob already exists: {key}")
            self.blobs[key] = (data, content_type)
        return f"{self.base_url}/{key}"


class S3BlobStore(IBlobStore):
    """
    S3 bucket with public-read objects.

    boto3 is synchronous; calls run in the default executor so uploads of
    one batch proceed concurrently.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        public_base_url: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.public_base_url = (
            public_base_url or f"https://{bucket}.s3.{region}.amazonaws.com"
        ).rstrip("/")
        self.s3 = client or boto3.client(
            "s3",
            region_name=region,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
        )

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        def upload():
            return self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000, immutable",
            )

        try:
            await asyncio.get_running_loop().run_in_executor(None, upload)
        except (BotoCoreError, ClientError) as e:
            logger.error("s3_put_failed", key=key, error=str(e))
            raise BlobStoreError(str(e)) from e

        return f"{self.public_base_url}/{key}"
