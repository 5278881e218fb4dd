# api/__init__.py
from api.server import (
    create_app,
    CreateCheckoutSessionRequest,
    SendEmailRequest,
)

__all__ = [
    "create_app",
    "CreateCheckoutSessionRequest",
    "SendEmailRequest",
]
