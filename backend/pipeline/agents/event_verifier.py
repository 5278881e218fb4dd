"""
Event Verifier
==============
Authenticates Stripe webhook deliveries.

The signature is checked over the exact raw request bytes before anything
parses them; only then is the body decoded into a PaymentEvent.
"""

import json
from typing import Optional

import stripe
import structlog

from pipeline.errors import VerificationError
from schemas.card_models import PaymentEvent


class EventVerifier:
    """
    Example:
        verifier = EventVerifier(settings.STRIPE_WEBHOOK_SECRET)
        event = verifier.verify(await request.body(), request.headers.get("stripe-signature"))
    """

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300):
        if not webhook_secret:
            raise ValueError("webhook_secret is required")
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds
        self._logger = structlog.get_logger().bind(component="event_verifier")

    def verify(self, payload: bytes, signature_header: Optional[str]) -> PaymentEvent:
        if not signature_header:
            self._logger.warning("webhook_signature_missing")
            raise VerificationError("Missing Stripe-Signature header")

        if not isinstance(payload, (bytes, bytearray)):
            raise VerificationError("Webhook body must be the raw request bytes")

        try:
            body = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            self._logger.warning("webhook_body_not_utf8")
            raise VerificationError("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self._secret, self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise VerificationError(f"Invalid webhook signature: {e}") from e

        try:
            data = json.loads(body)
        except ValueError as e:
            self._logger.warning("webhook_payload_invalid", error=str(e))
            raise VerificationError("Signed payload is not valid JSON") from e

        if not isinstance(data, dict):
            raise VerificationError("Signed payload is not an event object")

        event = PaymentEvent.from_payload(data)
        self._logger.info("webhook_verified", event_id=event.id, event_type=event.type)
        return event
