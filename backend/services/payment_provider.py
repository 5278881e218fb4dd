# services/payment_provider.py
# ============================================================================
# DIGITAL CARD BACKEND — PAYMENT PROVIDER
# ============================================================================
# Stripe checkout session creation behind an injectable interface.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import stripe
import structlog

logger = structlog.get_logger(component="payment_provider")


class IPaymentProvider(ABC):
    """Creates hosted checkout sessions."""

    @abstractmethod
    async def create_checkout_session(
        self,
        params: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Return the provider's session id."""
        pass


class StripePaymentProvider(IPaymentProvider):
    """Stripe client built once at startup with the secret key."""

    def __init__(self, secret_key: str, client: Optional[stripe.StripeClient] = None):
        self._client = client or stripe.StripeClient(secret_key)
        logger.info("stripe_client_ready", key_prefix=secret_key[:4] + "...")

    async def create_checkout_session(
        self,
        params: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> str:
        options = {"idempotency_key": idempotency_key} if idempotency_key else None

        def create():
            return self._client.checkout.sessions.create(params=params, options=options)

        session = await asyncio.get_running_loop().run_in_executor(None, create)
        logger.info(
            "stripe_session_created",
            session_id=session.id,
            success_url=session.success_url,
            cancel_url=session.cancel_url,
        )
        return session.id
