# storage/card_store.py
# ============================================================================
# DIGITAL CARD BACKEND — CARD STORE
# ============================================================================
# Persistence contract for purchase intents, provisioned cards and buyer
# plans, with an in-memory implementation and an asyncpg-backed one.
# ============================================================================

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import asyncpg
import structlog

from database import Database
from schemas.card_models import (
    CardContent,
    CardStatus,
    PlanTier,
    ProvisionedCard,
    PurchaseIntent,
    UserPlan,
)

logger = structlog.get_logger(component="card_store")


class StoreError(RuntimeError):
    """Any failure talking to the persistent store."""


class SlugTakenError(StoreError):
    """Another card already owns the requested custom_url."""


# =============================================================================
# INTERFACE
# =============================================================================

class ICardStore(ABC):
    """Persistent store contract used by checkout and fulfillment."""

    # Purchase intents

    @abstractmethod
    async def create_intent(
        self,
        intent: PurchaseIntent,
        stale_before: Optional[datetime] = None,
    ) -> PurchaseIntent:
        """
        Stage an intent; it reserves its custom_url until consumed.

        Intents for the same custom_url created before `stale_before` are
        discarded. A fresher one raises SlugTakenError.
        """
        pass

    @abstractmethod
    async def get_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        pass

    @abstractmethod
    async def delete_intent(self, intent_id: str) -> bool:
        pass

    # Cards

    @abstractmethod
    async def get_card(self, card_id: str) -> Optional[ProvisionedCard]:
        pass

    @abstractmethod
    async def get_card_by_intent(self, intent_id: str) -> Optional[ProvisionedCard]:
        pass

    @abstractmethod
    async def slug_available(self, custom_url: str, exclude_card_id: Optional[str] = None) -> bool:
        """True when no card other than `exclude_card_id` owns custom_url."""
        pass

    @abstractmethod
    async def insert_card(self, card: ProvisionedCard) -> ProvisionedCard:
        """
        Insert a card. When a card for the same source intent already
        exists, return the stored one instead of writing a second row.
        """
        pass

    @abstractmethod
    async def activate_card(self, card_id: str, content: CardContent) -> ProvisionedCard:
        """Move a card to active with its final content. Never moves backward."""
        pass

    @abstractmethod
    async def mark_notified(self, card_id: str) -> None:
        pass

    # Buyer plans

    @abstractmethod
    async def upsert_user_plan(self, plan: UserPlan) -> UserPlan:
        pass

    @abstractmethod
    async def get_user_plan(self, user_id: str) -> Optional[UserPlan]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryCardStore(ICardStore):
    """Single-process store, used for local development and tests."""

    def __init__(self):
        self.intents: Dict[str, PurchaseIntent] = {}
        self.cards: Dict[str, ProvisionedCard] = {}
        self.user_plans: Dict[str, UserPlan] = {}
        self.write_count = 0
        self._lock = asyncio.Lock()

    async def create_intent(
        self,
        intent: PurchaseIntent,
        stale_before: Optional[datetime] = None,
    ) -> PurchaseIntent:
        async with self._lock:
            for existing in list(self.intents.values()):
                if existing.custom_url != intent.custom_url or existing.id == intent.id:
                    continue
                if stale_before is not None and existing.created_at < stale_before:
                    del self.intents[existing.id]
                    continue
                raise SlugTakenError(f"custom_url reserved by a pending checkout: {intent.custom_url}")
            self.intents[intent.id] = intent
            self.write_count += 1
            return intent

    async def get_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        async with self._lock:
            return self.intents.get(intent_id)

    async def delete_intent(self, intent_id: str) -> bool:
        async with self._lock:
            if intent_id in self.intents:
                del self.intents[intent_id]
                self.write_count += 1
                return True
            return False

    async def get_card(self, card_id: str) -> Optional[ProvisionedCard]:
        async with self._lock:
            return self.cards.get(card_id)

    async def get_card_by_intent(self, intent_id: str) -> Optional[ProvisionedCard]:
        async with self._lock:
            for card in self.cards.values():
                if card.source_intent_id == intent_id:
                    return card
            return None

    async def slug_available(self, custom_url: str, exclude_card_id: Optional[str] = None) -> bool:
        async with self._lock:
            return not any(
                card.custom_url == custom_url and card.id != exclude_card_id
                for card in self.cards.values()
            )

    async def insert_card(self, card: ProvisionedCard) -> ProvisionedCard:
        async with self._lock:
            for existing in self.cards.values():
                if card.source_intent_id and existing.source_intent_id == card.source_intent_id:
                    return existing
                if existing.custom_url == card.custom_url:
                    raise SlugTakenError(f"custom_url already in use: {card.custom_url}")
            self.cards[card.id] = card
            self.write_count += 1
            return card

    async def activate_card(self, card_id: str, content: CardContent) -> ProvisionedCard:
        async with self._lock:
            card = self.cards.get(card_id)
            if card is None:
                raise StoreError(f"Card not found: {card_id}")
            activated = card.activate(content)
            self.cards[card_id] = activated
            self.write_count += 1
            return activated

    async def mark_notified(self, card_id: str) -> None:
        async with self._lock:
            card = self.cards.get(card_id)
            if card is None:
                raise StoreError(f"Card not found: {card_id}")
            self.cards[card_id] = card.model_copy(update={"notified_at": datetime.utcnow()})
            self.write_count += 1

    async def upsert_user_plan(self, plan: UserPlan) -> UserPlan:
        async with self._lock:
            self.user_plans[plan.user_id] = plan
            self.write_count += 1
            return plan

    async def get_user_plan(self, user_id: str) -> Optional[UserPlan]:
        async with self._lock:
            return self.user_plans.get(user_id)


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

def _content_from_row(raw: Any) -> CardContent:
    data = json.loads(raw) if isinstance(raw, str) else raw
    return CardContent.model_validate(data or {})


def _content_to_json(content: CardContent) -> str:
    return json.dumps(content.model_dump(mode="json", exclude_none=True))


class PostgresCardStore(ICardStore):
    """Card store on the shared asyncpg pool (see database.Database)."""

    def __init__(self, database: type[Database] = Database):
        self.db = database

    @staticmethod
    def _intent(row) -> PurchaseIntent:
        data = dict(row)
        data["content"] = _content_from_row(data["content"])
        return PurchaseIntent.model_validate(data)

    @staticmethod
    def _card(row) -> ProvisionedCard:
        data = dict(row)
        data["content"] = _content_from_row(data["content"])
        return ProvisionedCard.model_validate(data)

    async def create_intent(
        self,
        intent: PurchaseIntent,
        stale_before: Optional[datetime] = None,
    ) -> PurchaseIntent:
        try:
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    if stale_before is not None:
                        await conn.execute(
                            "DELETE FROM purchase_intents WHERE custom_url = $1 AND created_at < $2",
                            intent.custom_url,
                            stale_before,
                        )
                    await conn.execute(
                        """
                        INSERT INTO purchase_intents
                        (id, user_id, plan, content, email, custom_url, password, created_at, expires_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                        """,
                        intent.id,
                        intent.user_id,
                        intent.plan.value,
                        _content_to_json(intent.content),
                        intent.email,
                        intent.custom_url,
                        intent.password,
                        intent.created_at,
                        intent.expires_at,
                    )
        except asyncpg.UniqueViolationError as e:
            if "purchase_intents_custom_url_key" in str(e):
                raise SlugTakenError(f"custom_url reserved by a pending checkout: {intent.custom_url}") from e
            raise StoreError(str(e)) from e
        except Exception as e:
            logger.error("intent_insert_failed", intent_id=intent.id, error=str(e))
            raise StoreError(str(e)) from e
        return intent

    async def get_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        try:
            row = await self.db.fetch_one("SELECT * FROM purchase_intents WHERE id = $1", intent_id)
        except Exception as e:
            raise StoreError(str(e)) from e
        return self._intent(row) if row else None

    async def delete_intent(self, intent_id: str) -> bool:
        try:
            status = await self.db.execute("DELETE FROM purchase_intents WHERE id = $1", intent_id)
        except Exception as e:
            raise StoreError(str(e)) from e
        return status.endswith(" 1")

    async def get_card(self, card_id: str) -> Optional[ProvisionedCard]:
        try:
            row = await self.db.fetch_one("SELECT * FROM cards WHERE id = $1", card_id)
        except Exception as e:
            raise StoreError(str(e)) from e
        return self._card(row) if row else None

    async def get_card_by_intent(self, intent_id: str) -> Optional[ProvisionedCard]:
        try:
            row = await self.db.fetch_one("SELECT * FROM cards WHERE source_intent_id = $1", intent_id)
        except Exception as e:
            raise StoreError(str(e)) from e
        return self._card(row) if row else None

    async def slug_available(self, custom_url: str, exclude_card_id: Optional[str] = None) -> bool:
        try:
            row = await self.db.fetch_one(
                "SELECT 1 FROM cards WHERE custom_url = $1 AND id IS DISTINCT FROM $2",
                custom_url,
                exclude_card_id,
            )
        except Exception as e:
            raise StoreError(str(e)) from e
        return row is None

    async def insert_card(self, card: ProvisionedCard) -> ProvisionedCard:
        try:
            row = await self.db.fetch_one(
                """
                INSERT INTO cards
                (id, custom_url, user_id, plan, status, content, email, password,
                 source_intent_id, created_at, expires_at, activated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (source_intent_id) DO NOTHING
                RETURNING *
                """,
                card.id,
                card.custom_url,
                card.user_id,
                card.plan.value,
                card.status.value,
                _content_to_json(card.content),
                card.email,
                card.password,
                card.source_intent_id,
                card.created_at,
                card.expires_at,
                card.activated_at,
            )
        except Exception as e:
            if "cards_custom_url_key" in str(e):
                raise SlugTakenError(f"custom_url already in use: {card.custom_url}") from e
            raise StoreError(str(e)) from e

        if row:
            return self._card(row)

        existing = await self.get_card_by_intent(card.source_intent_id)
        if existing is None:
            raise StoreError(f"Card insert for intent {card.source_intent_id} returned no row")
        return existing

    async def activate_card(self, card_id: str, content: CardContent) -> ProvisionedCard:
        try:
            row = await self.db.fetch_one(
                """
                UPDATE cards
                SET status = $2,
                    content = $3,
                    activated_at = COALESCE(activated_at, NOW())
                WHERE id = $1
                RETURNING *
                """,
                card_id,
                CardStatus.ACTIVE.value,
                _content_to_json(content),
            )
        except Exception as e:
            raise StoreError(str(e)) from e
        if row is None:
            raise StoreError(f"Card not found: {card_id}")
        return self._card(row)

    async def mark_notified(self, card_id: str) -> None:
        try:
            await self.db.execute("UPDATE cards SET notified_at = NOW() WHERE id = $1", card_id)
        except Exception as e:
            raise StoreError(str(e)) from e

    async def upsert_user_plan(self, plan: UserPlan) -> UserPlan:
        try:
            await self.db.execute(
                """
                INSERT INTO user_plans (user_id, package_type, purchase_date)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id) DO UPDATE
                SET package_type = EXCLUDED.package_type,
                    purchase_date = EXCLUDED.purchase_date
                """,
                plan.user_id,
                plan.package_type.value,
                plan.purchase_date,
            )
        except Exception as e:
            raise StoreError(str(e)) from e
        return plan

    async def get_user_plan(self, user_id: str) -> Optional[UserPlan]:
        try:
            row = await self.db.fetch_one("SELECT * FROM user_plans WHERE user_id = $1", user_id)
        except Exception as e:
            raise StoreError(str(e)) from e
        if not row:
            return None
        return UserPlan(
            user_id=row["user_id"],
            package_type=PlanTier(row["package_type"]),
            purchase_date=row["purchase_date"],
        )
