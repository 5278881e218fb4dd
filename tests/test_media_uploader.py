import re

import pytest

from conftest import MP3_BYTES, PNG_BYTES, data_url
from pipeline.agents.media_uploader import (
    MediaUploader,
    decode_data_url,
    file_extension,
    storage_key,
)
from pipeline.errors import UploadError
from schemas.card_models import MediaCategory, MediaItem
from storage.blob_store import BlobStoreError, IBlobStore, InMemoryBlobStore


class BrokenBlobStore(IBlobStore):
    async def put(self, key, data, content_type):
        raise BlobStoreError("bucket unavailable")


def test_decode_base64_data_url():
    decoded = decode_data_url(data_url("image/png", PNG_BYTES))
    assert decoded.content_type == "image/png"
    assert decoded.data == PNG_BYTES


def test_decode_percent_encoded_data_url():
    decoded = decode_data_url("data:text/plain,hello%20world")
    assert decoded.content_type == "text/plain"
    assert decoded.data == b"hello world"


@pytest.mark.parametrize("value", [
    "https://example.com/photo.png",
    "data:image/png;base64,@@@not-base64@@@",
    "data:image/png;base64,",
    "",
])
def test_decode_rejects_bad_input(value):
    with pytest.raises(ValueError):
        decode_data_url(value)


def test_extension_prefers_original_name():
    assert file_extension("praia.JPEG", "image/jpeg") == ".jpeg"
    assert file_extension("nossa", "audio/mpeg") == ".mp3"
    assert file_extension("", "image/jpeg") == ".jpg"


def test_storage_key_layout_and_uniqueness():
    keys = {storage_key("joao-maria", MediaCategory.PHOTOS, 0, ".png") for _ in range(200)}
    assert len(keys) == 200
    for key in keys:
        assert re.fullmatch(r"joao-maria/photos/0-\d{13}-[0-9a-f]{8}\.png", key)


@pytest.mark.asyncio
async def test_upload_stores_bytes_and_returns_reference():
    blobs = InMemoryBlobStore(base_url="https://cdn.example.com")
    uploader = MediaUploader(blobs)
    item = MediaItem(name="nossa.mp3", data=data_url("audio/mpeg", MP3_BYTES))

    stored = await uploader.upload("joao-maria", MediaCategory.MUSICS, 2, item, correlation_id="evt_1")

    assert stored.data is None
    assert stored.name == "nossa.mp3"
    assert stored.content_type == "audio/mpeg"
    assert stored.url.startswith("https://cdn.example.com/joao-maria/musics/2-")
    assert stored.url.endswith(".mp3")

    [(key, (data, content_type))] = blobs.blobs.items()
    assert stored.url.endswith(key)
    assert data == MP3_BYTES
    assert content_type == "audio/mpeg"


@pytest.mark.asyncio
async def test_decode_failure_reports_item_index():
    uploader = MediaUploader(InMemoryBlobStore())
    item = MediaItem(name="x.png", data="data:image/png;base64,%%%")

    with pytest.raises(UploadError) as exc:
        await uploader.upload("joao-maria", MediaCategory.PHOTOS, 3, item)

    assert exc.value.index == 3
    assert exc.value.category == "photos"


@pytest.mark.asyncio
async def test_store_failure_reports_item_index():
    uploader = MediaUploader(BrokenBlobStore())
    item = MediaItem(name="x.png", data=data_url("image/png", PNG_BYTES))

    with pytest.raises(UploadError) as exc:
        await uploader.upload("joao-maria", MediaCategory.PHOTOS, 1, item)

    assert exc.value.index == 1
    assert isinstance(exc.value.__cause__, BlobStoreError)
