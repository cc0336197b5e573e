"""Booking-related Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.domain.booking_state import BookingEvent, BookingState, allowed_events
from app.models.booking import Booking, BookingTransition


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, also accepts snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookingInitialize(CamelModel):
    """Schema for creating a booking in SESSION_TYPE_SELECTED."""

    booking_id: UUID | None = None
    builder_id: str = Field(..., min_length=1, max_length=64)
    session_type_id: UUID
    client_id: str | None = Field(None, max_length=64)
    client_email: str | None = Field(None, max_length=255)


class TransitionRequest(CamelModel):
    """Schema for applying one event to a booking."""

    event: BookingEvent
    data: dict[str, Any] = Field(default_factory=dict)


class RecoverRequest(CamelModel):
    token: str = Field(..., min_length=1)


class BookingError(CamelModel):
    code: str | None = None
    message: str | None = None
    at: datetime | None = None


class BookingResponse(CamelModel):
    """Server-authoritative booking snapshot."""

    booking_id: UUID
    state: BookingState
    builder_id: str
    session_type_id: UUID
    client_id: str | None = None
    amount: int
    currency: str
    scheduling_event_uri: str | None = None
    scheduling_invitee_uri: str | None = None
    payment_session_id: str | None = None
    payment_intent_id: str | None = None
    refunded: bool = False
    start_time: datetime | None = None
    end_time: datetime | None = None
    rescheduled_from: datetime | None = None
    last_transition: datetime | None = None
    last_error: BookingError | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    recovery_token: str | None = None
    recovery_token_expires_at: datetime | None = None
    allowed_events: list[BookingEvent] = Field(default_factory=list)
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        last_error = None
        if booking.last_error_code or booking.last_error_message:
            last_error = BookingError(
                code=booking.last_error_code,
                message=booking.last_error_message,
                at=booking.last_error_at,
            )
        return cls(
            booking_id=booking.id,
            state=booking.state,
            builder_id=booking.builder_id,
            session_type_id=booking.session_type_id,
            client_id=booking.client_id,
            amount=booking.amount,
            currency=booking.currency,
            scheduling_event_uri=booking.scheduling_event_uri,
            scheduling_invitee_uri=booking.scheduling_invitee_uri,
            payment_session_id=booking.payment_session_id,
            payment_intent_id=booking.payment_intent_id,
            refunded=bool(booking.refund_id),
            start_time=booking.start_time,
            end_time=booking.end_time,
            rescheduled_from=booking.rescheduled_from,
            last_transition=booking.last_transition,
            last_error=last_error,
            cancellation_reason=booking.cancellation_reason,
            cancelled_at=booking.cancelled_at,
            recovery_token=booking.recovery_token,
            recovery_token_expires_at=booking.recovery_token_expires_at,
            allowed_events=sorted(allowed_events(booking.state), key=lambda event: event.value),
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class RecoverResponse(CamelModel):
    booking: BookingResponse
    resume_url: str


class TransitionLogEntry(CamelModel):
    """One row of the append-only transition log."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: UUID
    from_state: BookingState
    to_state: BookingState
    event: BookingEvent
    source: str
    payload: dict[str, Any] | None = None
    effects: list[str] | None = None
    created_at: datetime

    @classmethod
    def from_transition(cls, row: BookingTransition) -> "TransitionLogEntry":
        return cls.model_validate(row)
