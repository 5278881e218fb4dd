# schemas/__init__.py
from schemas.card_models import (
    CardContent,
    CardStatus,
    CheckoutMetadata,
    FulfillmentFlow,
    MediaCategory,
    MediaItem,
    PaymentEvent,
    PlanTier,
    ProvisionedCard,
    PurchaseIntent,
    UserPlan,
    plan_spec,
)

__all__ = [
    "CardContent",
    "CardStatus",
    "CheckoutMetadata",
    "FulfillmentFlow",
    "MediaCategory",
    "MediaItem",
    "PaymentEvent",
    "PlanTier",
    "ProvisionedCard",
    "PurchaseIntent",
    "UserPlan",
    "plan_spec",
]
