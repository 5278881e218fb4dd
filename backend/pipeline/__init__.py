# pipeline/__init__.py
# ============================================================================
# DIGITAL CARD BACKEND — PAYMENT-TO-PROVISIONING PIPELINE
# ============================================================================

from pipeline.errors import (
    MediaUploadError,
    MetadataError,
    NotificationError,
    PersistenceError,
    ProvisioningError,
    RenderError,
    ResolutionError,
    SessionCreationError,
    SlugConflictError,
    UploadError,
    VerificationError,
)

__all__ = [
    "MediaUploadError",
    "MetadataError",
    "NotificationError",
    "PersistenceError",
    "ProvisioningError",
    "RenderError",
    "ResolutionError",
    "SessionCreationError",
    "SlugConflictError",
    "UploadError",
    "VerificationError",
]
