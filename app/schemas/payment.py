"""Payment-related Pydantic schemas."""

from uuid import UUID

from pydantic import Field

from app.adapters.payment import PaymentStatus
from app.domain.booking_state import BookingState
from app.schemas.booking import CamelModel


class CheckoutCreate(CamelModel):
    """Schema for opening a hosted checkout for a booking.

    Amount and currency are taken from the booking's price snapshot, never
    from the client.
    """

    booking_id: UUID
    return_url: str | None = Field(None, max_length=2048)


class CheckoutResponse(CamelModel):
    session_id: str
    url: str | None
    booking_id: UUID
    state: BookingState


class CheckoutStatusResponse(CamelModel):
    """Result of the status-check fallback for a returning client."""

    payment_status: PaymentStatus
    payment_intent_id: str | None = None
    booking_id: UUID
    state: BookingState


class WebhookAck(CamelModel):
    received: bool = True
    duplicate: bool = False
    status: str | None = None
