"""Pydantic schemas for API validation."""

from app.schemas.booking import (
    BookingInitialize,
    BookingResponse,
    RecoverRequest,
    RecoverResponse,
    TransitionLogEntry,
    TransitionRequest,
)
from app.schemas.payment import (
    CheckoutCreate,
    CheckoutResponse,
    CheckoutStatusResponse,
    WebhookAck,
)

__all__ = [
    # Booking
    "BookingInitialize",
    "BookingResponse",
    "RecoverRequest",
    "RecoverResponse",
    "TransitionLogEntry",
    "TransitionRequest",
    # Payment
    "CheckoutCreate",
    "CheckoutResponse",
    "CheckoutStatusResponse",
    "WebhookAck",
]
