"""
Media Uploader
==============
Decodes inline ``data:`` payloads and stores each one as a blob.

Storage keys look like ``<slug>/<category>/<index>-<millis>-<token><ext>``:
the millisecond timestamp plus a random token keeps keys unique within a
run and across retries of the same run.
"""

import base64
import binascii
import mimetypes
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote_to_bytes

import structlog

from pipeline.errors import UploadError
from schemas.card_models import MediaCategory, MediaItem
from storage.blob_store import IBlobStore

DATA_URL_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[\w.+-]+=[^;,]*)*)(?P<base64>;base64)?,(?P<data>.*)$",
    re.DOTALL,
)

# mimetypes.guess_extension has a few unhelpful picks
PREFERRED_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
}


@dataclass
class DecodedMedia:
    content_type: str
    data: bytes


def decode_data_url(value: str) -> DecodedMedia:
    """Split a data URL into its declared media type and raw bytes."""
    match = DATA_URL_RE.match(value or "")
    if not match:
        raise ValueError("not a data URL")

    content_type = match.group("mime") or "application/octet-stream"
    payload = match.group("data")

    if match.group("base64"):
        try:
            data = base64.b64decode(payload.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"invalid base64 payload: {e}") from e
    else:
        data = unquote_to_bytes(payload)

    if not data:
        raise ValueError("empty payload")
    return DecodedMedia(content_type=content_type.lower(), data=data)


def file_extension(name: str, content_type: str) -> str:
    suffix = PurePosixPath(name or "").suffix.lower()
    if suffix and re.fullmatch(r"\.[a-z0-9]{1,8}", suffix):
        return suffix
    return PREFERRED_EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ""


def storage_key(slug: str, category: MediaCategory, index: int, extension: str) -> str:
    token = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    return f"{slug}/{category.value}/{index}-{token}{extension}"


class MediaUploader:
    def __init__(self, blob_store: IBlobStore):
        self.blobs = blob_store
        self._logger = structlog.get_logger().bind(component="media_uploader")

    async def upload(
        self,
        slug: str,
        category: MediaCategory,
        index: int,
        item: MediaItem,
        correlation_id: Optional[str] = None,
    ) -> MediaItem:
        """Persist one embedded item and return it with its public URL."""
        log = self._logger.bind(correlation_id=correlation_id, category=category.value, index=index)

        try:
            decoded = decode_data_url(item.data)
        except ValueError as e:
            log.warning("media_decode_failed", name=item.name, error=str(e))
            raise UploadError(
                f"Could not decode {category.value}[{index}]: {e}",
                index=index,
                category=category.value,
                reference=slug,
            ) from e

        key = storage_key(slug, category, index, file_extension(item.name, decoded.content_type))

        try:
            url = await self.blobs.put(key, decoded.data, decoded.content_type)
        except Exception as e:
            log.error("media_store_failed", key=key, error=str(e))
            raise UploadError(
                f"Could not store {category.value}[{index}]: {e}",
                index=index,
                category=category.value,
                reference=slug,
            ) from e

        log.info("media_uploaded", key=key, size_bytes=len(decoded.data), content_type=decoded.content_type)
        return item.persisted(url=url, content_type=decoded.content_type)
