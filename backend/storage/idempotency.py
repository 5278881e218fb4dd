# storage/idempotency.py
# ============================================================================
# DIGITAL CARD BACKEND — DELIVERED EVENTS LEDGER
# ============================================================================
# Claim/complete/release records keyed by checkout session so a redelivered
# or concurrently delivered webhook is fulfilled at most once.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog
from pydantic import BaseModel, Field

from database import Database

logger = structlog.get_logger(component="idempotency")


class IdempotencyRecord(BaseModel):
    key: str
    status: str  # "processing", "completed", "released"
    holder: Optional[str] = None
    result: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class IIdempotencyStore(ABC):
    """Idempotency store interface"""

    @abstractmethod
    async def try_acquire(self, key: str, holder_id: str) -> bool:
        """Claim the key. False when completed or freshly claimed by someone else."""
        pass

    @abstractmethod
    async def release(self, key: str, holder_id: str) -> bool:
        """Give up a claim so a later delivery can retry."""
        pass

    @abstractmethod
    async def mark_completed(self, key: str, holder_id: str, result: str = "success") -> bool:
        pass

    @abstractmethod
    async def is_completed(self, key: str) -> bool:
        pass

    @abstractmethod
    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        pass


class InMemoryIdempotencyStore(IIdempotencyStore):
    """Process-local ledger. Claims older than lock_timeout may be taken over."""

    def __init__(self, lock_timeout_seconds: int = 300):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()
        self._lock_timeout = timedelta(seconds=lock_timeout_seconds)

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            existing = self._records.get(key)
            if existing:
                if existing.status == "completed":
                    return False
                fresh = datetime.utcnow() - existing.updated_at < self._lock_timeout
                if existing.status == "processing" and fresh and existing.holder != holder_id:
                    return False

            self._records[key] = IdempotencyRecord(key=key, status="processing", holder=holder_id)
            return True

    async def release(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record or record.holder != holder_id or record.status != "processing":
                return False
            self._records[key] = record.model_copy(update={
                "status": "released",
                "holder": None,
                "updated_at": datetime.utcnow(),
            })
            return True

    async def mark_completed(self, key: str, holder_id: str, result: str = "success") -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record or record.holder != holder_id:
                return False
            self._records[key] = record.model_copy(update={
                "status": "completed",
                "result": result,
                "updated_at": datetime.utcnow(),
            })
            return True

    async def is_completed(self, key: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            return record is not None and record.status == "completed"

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        async with self._lock:
            return self._records.get(key)


class PostgresIdempotencyStore(IIdempotencyStore):
    """
    Ledger in the processed_events table.

    The claim is one conditional upsert, so two workers racing on the same
    key cannot both win.
    """

    def __init__(self, database: type[Database] = Database, lock_timeout_seconds: int = 300):
        self.db = database
        self._lock_timeout_seconds = lock_timeout_seconds

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        row = await self.db.fetch_one(
            """
            INSERT INTO processed_events (key, status, holder, updated_at)
            VALUES ($1, 'processing', $2, NOW())
            ON CONFLICT (key) DO UPDATE
            SET status = 'processing', holder = EXCLUDED.holder, updated_at = NOW()
            WHERE processed_events.status = 'released'
               OR (processed_events.status = 'processing'
                   AND processed_events.updated_at < NOW() - make_interval(secs => $3))
            RETURNING key
            """,
            key,
            holder_id,
            float(self._lock_timeout_seconds),
        )
        return row is not None

    async def release(self, key: str, holder_id: str) -> bool:
        status = await self.db.execute(
            """
            UPDATE processed_events
            SET status = 'released', holder = NULL, updated_at = NOW()
            WHERE key = $1 AND holder = $2 AND status = 'processing'
            """,
            key,
            holder_id,
        )
        return status.endswith(" 1")

    async def mark_completed(self, key: str, holder_id: str, result: str = "success") -> bool:
        status = await self.db.execute(
            """
            UPDATE processed_events
            SET status = 'completed', result = $3, updated_at = NOW()
            WHERE key = $1 AND holder = $2
            """,
            key,
            holder_id,
            result,
        )
        return status.endswith(" 1")

    async def is_completed(self, key: str) -> bool:
        row = await self.db.fetch_one(
            "SELECT status FROM processed_events WHERE key = $1",
            key,
        )
        return row is not None and row["status"] == "completed"

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        row = await self.db.fetch_one("SELECT * FROM processed_events WHERE key = $1", key)
        return IdempotencyRecord.model_validate(dict(row)) if row else None
