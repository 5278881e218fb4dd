"""
Fulfillment error taxonomy.

Each error carries the HTTP status the webhook route answers with: 4xx for
events that can never succeed, 5xx for failures a provider retry may fix.
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for checkout and fulfillment failures."""

    http_status: int = 500
    retryable: bool = True

    def __init__(self, message: str, *, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


class VerificationError(ProvisioningError):
    """Signature header absent, malformed or not matching the raw body."""
    http_status = 400
    retryable = False


class MetadataError(ProvisioningError):
    """Event metadata does not satisfy the checkout metadata schema."""
    http_status = 400
    retryable = False


class ResolutionError(ProvisioningError):
    """Referenced purchase intent or card is missing or unreadable."""


class UploadError(ProvisioningError):
    """A single media item could not be decoded or stored."""

    def __init__(self, message: str, *, index: int, category: str, reference: Optional[str] = None):
        super().__init__(message, reference=reference)
        self.index = index
        self.category = category


class MediaUploadError(ProvisioningError):
    """At least one upload of the batch failed; nothing was persisted."""

    def __init__(self, cause: UploadError):
        super().__init__(
            f"Upload of {cause.category}[{cause.index}] failed: {cause}",
            reference=cause.reference,
        )
        self.index = cause.index
        self.category = cause.category


class PersistenceError(ProvisioningError):
    """A write to the persistent store failed."""


class SlugConflictError(ProvisioningError):
    """The requested custom_url already belongs to another card or a live checkout."""
    http_status = 409
    retryable = False


class RenderError(ProvisioningError):
    """Template or PDF rendering failed."""
    retryable = False


class NotificationError(ProvisioningError):
    """Mail hand-off failed. Never fails an already provisioned card."""


class SessionCreationError(ProvisioningError):
    """Checkout session could not be created (provider or storage failure)."""
