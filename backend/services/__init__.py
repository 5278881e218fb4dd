# services/__init__.py
# ============================================================================
# DIGITAL CARD BACKEND — SERVICES MODULE
# ============================================================================
# Payment provider, mail transport, document rendering and wiring
# ============================================================================

from services.document_renderer import (
    DocumentRenderer,
    IPdfEngine,
    WeasyPrintEngine,
)
from services.mail_transport import (
    IMailTransport,
    InMemoryMailTransport,
    MailTransportError,
    SmtpMailTransport,
)
from services.payment_provider import (
    IPaymentProvider,
    StripePaymentProvider,
)

__all__ = [
    # Rendering
    "DocumentRenderer",
    "IPdfEngine",
    "WeasyPrintEngine",
    # Mail
    "IMailTransport",
    "InMemoryMailTransport",
    "MailTransportError",
    "SmtpMailTransport",
    # Payments
    "IPaymentProvider",
    "StripePaymentProvider",
]
