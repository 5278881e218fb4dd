# storage/__init__.py
# ============================================================================
# DIGITAL CARD BACKEND — STORAGE MODULE
# ============================================================================
# Persistent store, blob store and delivered-events ledger
# ============================================================================

from storage.blob_store import (
    BlobStoreError,
    IBlobStore,
    InMemoryBlobStore,
    S3BlobStore,
)
from storage.card_store import (
    ICardStore,
    InMemoryCardStore,
    PostgresCardStore,
    SlugTakenError,
    StoreError,
)
from storage.idempotency import (
    IdempotencyRecord,
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    PostgresIdempotencyStore,
)

__all__ = [
    # Blobs
    "BlobStoreError",
    "IBlobStore",
    "InMemoryBlobStore",
    "S3BlobStore",
    # Cards
    "ICardStore",
    "InMemoryCardStore",
    "PostgresCardStore",
    "SlugTakenError",
    "StoreError",
    # Ledger
    "IdempotencyRecord",
    "IIdempotencyStore",
    "InMemoryIdempotencyStore",
    "PostgresIdempotencyStore",
]
