# services/container.py
# ============================================================================
# DIGITAL CARD BACKEND — SERVICE CONTAINER
# ============================================================================
# Wires stores, transports and pipeline components once per process.
# ============================================================================

from dataclasses import dataclass
from typing import Optional

import structlog

from config import Settings
from database import Database
from pipeline.agents.checkout_initiator import CheckoutInitiator
from pipeline.agents.event_verifier import EventVerifier
from pipeline.agents.media_uploader import MediaUploader
from pipeline.agents.notification_composer import NotificationComposer
from pipeline.agents.provisioning_orchestrator import ProvisioningOrchestrator
from services.document_renderer import DocumentRenderer, IPdfEngine, WeasyPrintEngine
from services.mail_transport import IMailTransport, InMemoryMailTransport, SmtpMailTransport
from services.payment_provider import IPaymentProvider, StripePaymentProvider
from storage.blob_store import IBlobStore, InMemoryBlobStore, S3BlobStore
from storage.card_store import ICardStore, InMemoryCardStore, PostgresCardStore
from storage.idempotency import (
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    PostgresIdempotencyStore,
)

logger = structlog.get_logger(component="service_container")


@dataclass
class ServiceContainer:
    settings: Settings
    store: ICardStore
    blobs: IBlobStore
    idempotency: IIdempotencyStore
    mail: IMailTransport
    payments: IPaymentProvider
    renderer: DocumentRenderer
    owns_database: bool = False

    def __post_init__(self):
        self.verifier = EventVerifier(
            self.settings.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=self.settings.WEBHOOK_TOLERANCE_SECONDS,
        )
        self.checkout = CheckoutInitiator(self.settings, self.payments, self.store)
        self.composer = NotificationComposer(self.renderer, self.mail)
        self.orchestrator = ProvisioningOrchestrator(
            settings=self.settings,
            store=self.store,
            uploader=MediaUploader(self.blobs),
            composer=self.composer,
            idempotency=self.idempotency,
        )

    @classmethod
    async def create(cls, settings: Settings) -> "ServiceContainer":
        """Production wiring: Postgres, S3, SMTP and Stripe."""
        await Database.initialize(
            settings.DATABASE_URL,
            min_size=settings.DB_MIN_POOL_SIZE,
            max_size=settings.DB_MAX_POOL_SIZE,
        )
        container = cls(
            settings=settings,
            store=PostgresCardStore(),
            blobs=S3BlobStore(
                bucket=settings.S3_BUCKET,
                region=settings.AWS_REGION,
                public_base_url=settings.MEDIA_PUBLIC_BASE_URL,
            ),
            idempotency=PostgresIdempotencyStore(
                lock_timeout_seconds=settings.IDEMPOTENCY_LOCK_TIMEOUT_SECONDS,
            ),
            mail=SmtpMailTransport(
                host=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.MAIL_USER,
                password=settings.MAIL_PASSWORD,
                from_name=settings.MAIL_FROM_NAME,
                timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
            ),
            payments=StripePaymentProvider(settings.STRIPE_SECRET_KEY),
            renderer=DocumentRenderer(WeasyPrintEngine()),
            owns_database=True,
        )
        logger.info("services_ready", env=settings.ENV, bucket=settings.S3_BUCKET)
        return container

    @classmethod
    def in_memory(
        cls,
        settings: Settings,
        payments: IPaymentProvider,
        pdf_engine: Optional[IPdfEngine] = None,
        mail: Optional[IMailTransport] = None,
    ) -> "ServiceContainer":
        """Local wiring with in-process stores; the payment provider is always injected."""
        return cls(
            settings=settings,
            store=InMemoryCardStore(),
            blobs=InMemoryBlobStore(),
            idempotency=InMemoryIdempotencyStore(
                lock_timeout_seconds=settings.IDEMPOTENCY_LOCK_TIMEOUT_SECONDS,
            ),
            mail=mail or InMemoryMailTransport(),
            payments=payments,
            renderer=DocumentRenderer(pdf_engine),
        )

    async def close(self) -> None:
        if self.owns_database:
            await Database.close()
        logger.info("services_closed")
