"""Recovery tokens and log-safe masking of provider identifiers."""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from app.config import settings
from app.core.exceptions import ValidationError

RECOVERY_TOKEN_TYPE = "booking_recovery"


def create_recovery_token(
    booking_id: str,
    state: str,
    issued_at: datetime | None = None,
    expires_delta: timedelta | None = None,
) -> tuple[str, datetime]:
    """Create a signed token that lets a client resume a booking flow.

    Returns:
        Tuple of (token, expiry)
    """
    now = issued_at or datetime.now(UTC)
    expire = now + (expires_delta or timedelta(hours=settings.recovery_token_expire_hours))
    to_encode: dict[str, Any] = {
        "sub": booking_id,
        "state": state,
        "type": RECOVERY_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": expire,
    }
    token = jwt.encode(
        to_encode,
        settings.recovery_token_secret,
        algorithm=settings.recovery_token_algorithm,
    )
    return token, expire


def verify_recovery_token(token: str) -> dict[str, Any]:
    """Verify and decode a recovery token."""
    try:
        payload = jwt.decode(
            token,
            settings.recovery_token_secret,
            algorithms=[settings.recovery_token_algorithm],
        )
    except JWTError as e:
        raise ValidationError(f"Recovery token validation failed: {str(e)}")
    if payload.get("type") != RECOVERY_TOKEN_TYPE or not payload.get("sub"):
        raise ValidationError("Invalid recovery token")
    return payload


def mask_identifier(value: str | None) -> str | None:
    """Mask all but the first and last four characters."""
    if not value:
        return value
    if len(value) <= 8:
        return "[MASKED]"
    return f"{value[:4]}****{value[-4:]}"


SENSITIVE_FIELDS = ("payment_session_id", "payment_intent_id", "refund_id")


def sanitize_for_logging(data: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``data`` with payment identifiers masked."""
    sanitized = dict(data)
    for field in SENSITIVE_FIELDS:
        if sanitized.get(field):
            sanitized[field] = mask_identifier(str(sanitized[field]))
    return sanitized
