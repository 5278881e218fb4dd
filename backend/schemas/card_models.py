# schemas/card_models.py
# ============================================================================
# DIGITAL CARD BACKEND — DOMAIN MODELS
# ============================================================================
# Type-safe records for purchase intents, provisioned cards, the plan
# catalog and the metadata contract carried through Stripe checkout.
# ============================================================================

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


# ============================================================================
# SECTION 1: ENUMS + PLAN CATALOG
# ============================================================================

class PlanTier(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"


class CardStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class MediaCategory(str, Enum):
    PHOTOS = "photos"
    MUSICS = "musics"


class FulfillmentFlow(str, Enum):
    """Which kind of content reference a checkout carries."""
    EPHEMERAL = "ephemeral"      # PurchaseIntent staged before payment
    PRE_CREATED = "pre_created"  # ProvisionedCard stored as pending


@dataclass(frozen=True)
class PlanSpec:
    price_setting: str
    includes_pdf: bool
    validity_days: Optional[int]


PLAN_CATALOG: Dict[PlanTier, PlanSpec] = {
    PlanTier.BASIC: PlanSpec(price_setting="STRIPE_PRICE_BASIC", includes_pdf=False, validity_days=365),
    PlanTier.PREMIUM: PlanSpec(price_setting="STRIPE_PRICE_PREMIUM", includes_pdf=True, validity_days=None),
}


def plan_spec(plan: PlanTier) -> PlanSpec:
    """Anything that is not basic is billed and delivered as premium."""
    if plan == PlanTier.BASIC:
        return PLAN_CATALOG[PlanTier.BASIC]
    return PLAN_CATALOG[PlanTier.PREMIUM]


# ============================================================================
# SECTION 2: CARD CONTENT
# ============================================================================

class MediaItem(BaseModel):
    """
    One photo or audio entry.

    Before fulfillment `data` holds an inline data URL
    (``data:<mime>;base64,<bytes>``); afterwards `url` holds the
    durable public locator and `data` is dropped.
    """
    name: str = ""
    data: Optional[str] = None
    url: Optional[str] = None
    content_type: Optional[str] = None

    @model_validator(mode="after")
    def _has_payload(self) -> "MediaItem":
        if not self.data and not self.url:
            raise ValueError("media item needs either inline data or a url")
        return self

    @property
    def is_embedded(self) -> bool:
        return bool(self.data) and self.data.startswith("data:")

    def persisted(self, url: str, content_type: Optional[str]) -> "MediaItem":
        return MediaItem(name=self.name, url=url, content_type=content_type)


class CardContent(BaseModel):
    """Free-form card document. Unknown textual fields are carried unchanged."""
    model_config = ConfigDict(extra="allow")

    photos: List[MediaItem] = Field(default_factory=list)
    musics: List[MediaItem] = Field(default_factory=list)
    music_link: Optional[str] = None

    def media(self, category: MediaCategory) -> List[MediaItem]:
        return self.photos if category == MediaCategory.PHOTOS else self.musics

    def embedded_items(self) -> List[tuple[MediaCategory, int, MediaItem]]:
        items = []
        for category in MediaCategory:
            for index, item in enumerate(self.media(category)):
                if item.is_embedded:
                    items.append((category, index, item))
        return items

    def with_media(
        self,
        replacements: Dict[tuple[MediaCategory, int], MediaItem],
    ) -> "CardContent":
        """Copy with embedded entries swapped for their persisted references."""
        update: Dict[str, Any] = {}
        for category in MediaCategory:
            update[category.value] = [
                replacements.get((category, index), item)
                for index, item in enumerate(self.media(category))
            ]
        return self.model_copy(update=update)

    def text_fields(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in self.model_dump(exclude={"photos", "musics"}).items()
            if value is not None
        }


# ============================================================================
# SECTION 3: RECORDS
# ============================================================================

def generate_password() -> str:
    return secrets.token_urlsafe(6)


def expiration_for(plan: PlanTier, created_at: datetime) -> Optional[datetime]:
    days = plan_spec(plan).validity_days
    return created_at + timedelta(days=days) if days else None


class PurchaseIntent(BaseModel):
    """Pre-payment staging record, consumed once by fulfillment."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    plan: PlanTier
    content: CardContent
    email: str
    custom_url: str
    password: str = Field(default_factory=generate_password)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _default_expiration(self) -> "PurchaseIntent":
        if self.expires_at is None:
            self.expires_at = expiration_for(self.plan, self.created_at)
        return self


class ProvisionedCard(BaseModel):
    """The durable, paid product."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    custom_url: str
    user_id: Optional[str] = None
    plan: PlanTier
    status: CardStatus = CardStatus.PENDING
    content: CardContent
    email: Optional[str] = None
    password: str = Field(default_factory=generate_password)
    source_intent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None

    @computed_field
    @property
    def is_active(self) -> bool:
        return self.status == CardStatus.ACTIVE

    def activate(self, content: CardContent) -> "ProvisionedCard":
        """pending -> active; an already active card keeps its status."""
        return self.model_copy(update={
            "status": CardStatus.ACTIVE,
            "content": content,
            "activated_at": self.activated_at or datetime.utcnow(),
        })

    @classmethod
    def from_intent(cls, intent: PurchaseIntent, content: CardContent) -> "ProvisionedCard":
        return cls(
            custom_url=intent.custom_url,
            user_id=intent.user_id,
            plan=intent.plan,
            status=CardStatus.ACTIVE,
            content=content,
            email=intent.email,
            password=intent.password,
            source_intent_id=intent.id,
            created_at=intent.created_at,
            expires_at=intent.expires_at,
            activated_at=datetime.utcnow(),
        )


class UserPlan(BaseModel):
    user_id: str
    package_type: PlanTier
    purchase_date: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# SECTION 4: STRIPE METADATA CONTRACT
# ============================================================================

class CheckoutMetadata(BaseModel):
    """
    Strict schema for the string->string metadata attached at checkout
    and echoed back on ``checkout.session.completed``.

    Exactly one of intentId / siteId identifies the content.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    intent_id: Optional[str] = Field(default=None, alias="intentId")
    site_id: Optional[str] = Field(default=None, alias="siteId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    plan: PlanTier
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    custom_url: str = Field(alias="customUrl", min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

    @field_validator("intent_id", "site_id", "user_id", mode="before")
    @classmethod
    def _blank_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _one_reference(self) -> "CheckoutMetadata":
        if bool(self.intent_id) == bool(self.site_id):
            raise ValueError("exactly one of intentId or siteId is required")
        return self

    @property
    def flow(self) -> FulfillmentFlow:
        return FulfillmentFlow.EPHEMERAL if self.intent_id else FulfillmentFlow.PRE_CREATED

    @property
    def content_reference(self) -> str:
        return self.intent_id or self.site_id

    def to_stripe(self) -> Dict[str, str]:
        """Stripe metadata values must be strings; absent keys are omitted."""
        data = self.model_dump(by_alias=True, mode="json", exclude_none=True)
        return {key: str(value) for key, value in data.items()}


class PaymentEvent(BaseModel):
    """Verified provider notification, reduced to what fulfillment reads."""
    id: str
    type: str
    checkout_session_id: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PaymentEvent":
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        details = obj.get("customer_details") or {}
        return cls(
            id=payload.get("id", "unknown"),
            type=payload.get("type", "unknown"),
            checkout_session_id=obj.get("id"),
            customer_email=obj.get("customer_email") or details.get("email"),
            metadata={str(k): str(v) for k, v in metadata.items() if v is not None},
        )
