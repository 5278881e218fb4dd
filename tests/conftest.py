import base64
import hashlib
import hmac
import json
import time
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from config import Settings
from schemas.card_models import (
    CardContent,
    MediaItem,
    PaymentEvent,
    PlanTier,
    PurchaseIntent,
)
from services.container import ServiceContainer
from services.document_renderer import IPdfEngine
from services.payment_provider import IPaymentProvider

WEBHOOK_SECRET = "whsec_test_secret"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
MP3_BYTES = b"ID3\x03\x00\x00\x00" + b"\x01" * 16


def data_url(content_type: str, payload: bytes) -> str:
    return f"data:{content_type};base64,{base64.b64encode(payload).decode()}"


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def completed_event_payload(metadata: dict, event_id: str = "evt_1", session_id: str = "cs_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "customer_email": metadata.get("email"),
                "metadata": metadata,
            }
        },
    }


def completed_event(metadata: dict, event_id: str = "evt_1", session_id: str = "cs_test_1") -> PaymentEvent:
    return PaymentEvent.from_payload(completed_event_payload(metadata, event_id, session_id))


class FakePdfEngine(IPdfEngine):
    def __init__(self, output: bytes = b"%PDF-1.7 fake"):
        self.output = output
        self.calls = []

    def write_pdf(self, html: str, base_url: Optional[str] = None) -> bytes:
        self.calls.append(html)
        return self.output


class FakePaymentProvider(IPaymentProvider):
    def __init__(self, session_id: str = "cs_test_1"):
        self.session_id = session_id
        self.calls = []

    async def create_checkout_session(self, params, idempotency_key=None) -> str:
        self.calls.append((params, idempotency_key))
        return self.session_id


@pytest.fixture
def settings() -> Settings:
    return Settings(
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        DATABASE_URL="postgresql://localhost/cards",
        S3_BUCKET="cards-media",
        FRONTEND_URL="https://cards.example.com/",
        MAIL_USER="no-reply@cards.example.com",
        MAIL_PASSWORD="secret",
        EXTERNAL_CALL_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
def pdf_engine() -> FakePdfEngine:
    return FakePdfEngine()


@pytest.fixture
def payments() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def container(settings, payments, pdf_engine) -> ServiceContainer:
    return ServiceContainer.in_memory(settings, payments=payments, pdf_engine=pdf_engine)


@pytest.fixture
def card_content() -> CardContent:
    return CardContent(
        title="João & Maria",
        message="Feliz aniversário de namoro",
        music_link="https://youtu.be/abc",
        photos=[
            MediaItem(name="praia.png", data=data_url("image/png", PNG_BYTES)),
            MediaItem(name="jantar.png", data=data_url("image/png", PNG_BYTES)),
        ],
        musics=[MediaItem(name="nossa.mp3", data=data_url("audio/mpeg", MP3_BYTES))],
    )


@pytest.fixture
def make_intent(card_content):
    def factory(plan: PlanTier = PlanTier.BASIC, custom_url: str = "joao-maria", user_id: Optional[str] = None):
        return PurchaseIntent(
            plan=plan,
            content=card_content,
            email="a@b.com",
            custom_url=custom_url,
            user_id=user_id,
        )
    return factory


@pytest.fixture
def failing_provider():
    provider = AsyncMock(spec=IPaymentProvider)
    provider.create_checkout_session.side_effect = RuntimeError("stripe is down")
    return provider


def to_json(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"))
