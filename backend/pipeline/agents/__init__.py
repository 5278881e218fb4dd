# Pipeline Agents
# ===============
# Checkout, webhook verification and fulfillment for the digital card backend

import logging

import structlog

# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

from .checkout_initiator import (  # noqa: E402
    CheckoutInitiator,
    CheckoutRequest,
    PriceManager,
)
from .event_verifier import EventVerifier  # noqa: E402
from .media_uploader import (  # noqa: E402
    MediaUploader,
    decode_data_url,
    storage_key,
)
from .notification_composer import (  # noqa: E402
    NotificationComposer,
    RenderedDocuments,
)
from .provisioning_orchestrator import (  # noqa: E402
    ProvisioningOrchestrator,
    ProvisioningOutcome,
    ProvisioningResult,
    WebhookRouter,
)

__all__ = [
    # Checkout
    "CheckoutInitiator",
    "CheckoutRequest",
    "PriceManager",
    # Webhook
    "EventVerifier",
    "WebhookRouter",
    # Fulfillment
    "MediaUploader",
    "decode_data_url",
    "storage_key",
    "NotificationComposer",
    "RenderedDocuments",
    "ProvisioningOrchestrator",
    "ProvisioningOutcome",
    "ProvisioningResult",
]
