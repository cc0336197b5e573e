"""Core utilities and security modules."""

from app.core.encryption import EncryptionService
from app.core.exceptions import (
    AppException,
    ConcurrencyConflict,
    ConflictingState,
    EventNotAllowed,
    ExternalProviderError,
    IllegalTransition,
    MissingPrerequisite,
    NotFoundError,
    TransitionError,
    ValidationError,
    WebhookSignatureError,
)
from app.core.security import (
    create_recovery_token,
    mask_identifier,
    sanitize_for_logging,
    verify_recovery_token,
)

__all__ = [
    "EncryptionService",
    "AppException",
    "ConcurrencyConflict",
    "ConflictingState",
    "EventNotAllowed",
    "ExternalProviderError",
    "IllegalTransition",
    "MissingPrerequisite",
    "NotFoundError",
    "TransitionError",
    "ValidationError",
    "WebhookSignatureError",
    "create_recovery_token",
    "mask_identifier",
    "sanitize_for_logging",
    "verify_recovery_token",
]
