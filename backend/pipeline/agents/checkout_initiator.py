"""
Checkout Initiator
==================
Stages card content (when the client sends it inline) and opens a Stripe
Checkout Session carrying the correlation metadata the webhook needs.

Ordering: the PurchaseIntent is stored before Stripe is called. If storing
fails no session is requested; if Stripe fails the staged intent is removed.

A staged intent reserves its custom_url for as long as its session can be
paid. Sessions expire after SLUG_RESERVATION_MINUTES; intents older than twice
that are treated as abandoned and give way to a new checkout.
"""

import asyncio
import hashlib
import json
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from pydantic import BaseModel, ValidationError

from config import Settings
from pipeline.errors import SessionCreationError, SlugConflictError
from schemas.card_models import (
    CardContent,
    CheckoutMetadata,
    PlanTier,
    PurchaseIntent,
    plan_spec,
)
from services.payment_provider import IPaymentProvider
from storage.card_store import ICardStore, SlugTakenError


class CheckoutRequest(BaseModel):
    """Purchase intent as received from the client."""
    plan: PlanTier
    email: str
    custom_url: str
    user_id: Optional[str] = None
    site_id: Optional[str] = None
    site_data: Optional[CardContent] = None


class PriceManager:
    """Plan tier -> Stripe price id, from the plan catalog."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def get_price_id(self, plan: PlanTier) -> str:
        return getattr(self._settings, plan_spec(plan).price_setting)


class CheckoutInitiator:
    def __init__(
        self,
        settings: Settings,
        provider: IPaymentProvider,
        store: ICardStore,
        price_manager: Optional[PriceManager] = None,
    ):
        self.settings = settings
        self.provider = provider
        self.store = store
        self.prices = price_manager or PriceManager(settings)
        self._timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self._reservation = timedelta(minutes=settings.SLUG_RESERVATION_MINUTES)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="checkout_initiator", correlation_id=correlation_id)

    def _build_metadata(self, request: CheckoutRequest, intent_id: Optional[str]) -> CheckoutMetadata:
        try:
            return CheckoutMetadata(
                intent_id=intent_id,
                site_id=None if intent_id else request.site_id,
                user_id=request.user_id,
                plan=request.plan,
                email=request.email,
                custom_url=request.custom_url,
            )
        except ValidationError as e:
            raise SessionCreationError(f"Invalid checkout request: {e}") from e

    def _session_params(self, metadata: CheckoutMetadata) -> dict:
        base = self.settings.frontend_base
        reference = metadata.content_reference
        slug = metadata.custom_url
        return {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{"price": self.prices.get_price_id(metadata.plan), "quantity": 1}],
            "currency": self.settings.CHECKOUT_CURRENCY,
            "customer_email": metadata.email,
            "success_url": f"{base}/dashboard?success=true&siteId={reference}&slug={slug}",
            "cancel_url": f"{base}/dashboard?canceled=true&slug={slug}",
            "metadata": metadata.to_stripe(),
            "expires_at": int(time.time() + self._reservation.total_seconds()),
        }

    @staticmethod
    def _idempotency_key(reference: str, params: dict) -> str:
        """Same reference with a different plan, email or slug must not replay an older session."""
        fields = {k: v for k, v in params.items() if k != "expires_at"}
        digest = hashlib.sha256(json.dumps(fields, sort_keys=True).encode("utf-8")).hexdigest()
        return f"checkout_{reference}_{digest[:16]}"

    async def create_session(self, request: CheckoutRequest) -> str:
        """Return the Stripe session id to redirect the buyer with."""
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        log.info(
            "checkout_initiated",
            plan=request.plan.value,
            custom_url=request.custom_url,
            has_site_id=bool(request.site_id),
            has_site_data=request.site_data is not None,
        )

        if request.site_data is None and not request.site_id:
            raise SessionCreationError("Either siteId or siteData is required")

        intent: Optional[PurchaseIntent] = None
        if request.site_data is not None:
            intent = PurchaseIntent(
                user_id=request.user_id,
                plan=request.plan,
                content=request.site_data,
                email=request.email,
                custom_url=request.custom_url,
            )

        metadata = self._build_metadata(request, intent.id if intent else None)
        params = self._session_params(metadata)

        await self._ensure_slug_free(request, log)

        if intent is not None:
            try:
                async with asyncio.timeout(self._timeout):
                    await self.store.create_intent(
                        intent,
                        stale_before=datetime.utcnow() - 2 * self._reservation,
                    )
            except SlugTakenError as e:
                log.warning("slug_reserved", custom_url=intent.custom_url)
                raise SlugConflictError(str(e), reference=intent.custom_url) from e
            except Exception as e:
                log.error("intent_store_failed", error=str(e), error_type=type(e).__name__)
                raise SessionCreationError("Could not stage card content") from e
            log.info("intent_staged", intent_id=intent.id)

        try:
            async with asyncio.timeout(self._timeout):
                session_id = await self.provider.create_checkout_session(
                    params,
                    idempotency_key=self._idempotency_key(metadata.content_reference, params),
                )
        except Exception as e:
            log.error("checkout_failed", error=str(e), error_type=type(e).__name__)
            if intent is not None:
                await self._discard_intent(intent.id, log)
            raise SessionCreationError("Could not create checkout session") from e

        log.info("checkout_created", stripe_session_id=session_id, reference=metadata.content_reference)
        return session_id

    async def _ensure_slug_free(self, request: CheckoutRequest, log) -> None:
        # A pre-created card may keep its own slug.
        exclude = request.site_id if request.site_data is None else None
        try:
            async with asyncio.timeout(self._timeout):
                available = await self.store.slug_available(request.custom_url, exclude_card_id=exclude)
        except Exception as e:
            log.error("slug_check_failed", error=str(e), error_type=type(e).__name__)
            raise SessionCreationError("Could not check custom_url availability") from e
        if not available:
            log.warning("slug_taken", custom_url=request.custom_url)
            raise SlugConflictError(
                f"custom_url already in use: {request.custom_url}",
                reference=request.custom_url,
            )

    async def _discard_intent(self, intent_id: str, log) -> None:
        try:
            await self.store.delete_intent(intent_id)
            log.info("intent_discarded", intent_id=intent_id)
        except Exception as e:
            # Unpaid intents are never fulfilled; an orphan only costs storage.
            log.error("intent_discard_failed", intent_id=intent_id, error=str(e))
