"""Booking endpoints: the HTTP face of the Transition API."""

from typing import Any
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, status

from app.api.deps import AppSettings, Transitions
from app.core.exceptions import EventNotAllowed, IllegalTransition, MissingPrerequisite
from app.domain.booking_state import CLIENT_EVENT_FIELDS, BookingEvent, BookingState
from app.models.booking import Booking
from app.schemas.booking import (
    BookingInitialize,
    BookingResponse,
    RecoverRequest,
    RecoverResponse,
    TransitionLogEntry,
    TransitionRequest,
)

router = APIRouter()


def client_payload(event: BookingEvent, data: dict[str, Any]) -> dict[str, Any]:
    """Payload fields a client may set for ``event``; anything else is dropped."""
    if event not in CLIENT_EVENT_FIELDS:
        raise EventNotAllowed(event.value)
    return {name: data[name] for name in CLIENT_EVENT_FIELDS[event] if name in data}


def resume_url(booking: Booking, base_url: str) -> str:
    """Link that rebuilds the client flow for a booking."""
    params = {
        "bookingId": str(booking.id),
        "step": booking.current_state,
        "sessionTypeId": str(booking.session_type_id),
        "builderId": booking.builder_id,
    }
    if booking.payment_session_id:
        params["paymentSessionId"] = booking.payment_session_id
    return f"{base_url}/booking?{urlencode(params)}"


@router.post("/initialize", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def initialize_booking(data: BookingInitialize, transitions: Transitions) -> BookingResponse:
    """Create a booking in SESSION_TYPE_SELECTED.

    Repeating the call with the same ids returns the existing booking.
    """
    booking = await transitions.initialize(
        str(data.booking_id) if data.booking_id else None,
        builder_id=data.builder_id,
        session_type_id=str(data.session_type_id),
        client_id=data.client_id,
        client_email=data.client_email,
    )
    return BookingResponse.from_booking(booking)


@router.post("/recover", response_model=RecoverResponse)
async def recover_booking(
    data: RecoverRequest, transitions: Transitions, config: AppSettings
) -> RecoverResponse:
    """Resolve a recovery token to the booking it was issued for."""
    booking = await transitions.recover(data.token)
    return RecoverResponse(
        booking=BookingResponse.from_booking(booking),
        resume_url=resume_url(booking, config.app_base_url),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: UUID, transitions: Transitions) -> BookingResponse:
    booking = await transitions.get(booking_id)
    return BookingResponse.from_booking(booking)


@router.get("/{booking_id}/history", response_model=list[TransitionLogEntry])
async def get_booking_history(
    booking_id: UUID, transitions: Transitions
) -> list[TransitionLogEntry]:
    """Applied transitions, oldest first."""
    rows = await transitions.history(booking_id)
    return [TransitionLogEntry.from_transition(row) for row in rows]


@router.post("/{booking_id}/transition", response_model=BookingResponse)
async def transition_booking(
    booking_id: UUID, data: TransitionRequest, transitions: Transitions
) -> BookingResponse:
    """Apply one client event.

    Provider-only events answer 403, illegal or conflicting events 409,
    missing payload fields 400, lost concurrency races 409 with ``retryable`` set.
    """
    payload = client_payload(data.event, data.data)
    if data.event is BookingEvent.SELECT_SESSION_TYPE:
        # Re-selection after a reset; pricing comes from the stored session type
        missing = [name for name in ("builder_id", "session_type_id") if not payload.get(name)]
        if missing:
            raise MissingPrerequisite(f"Missing required fields: {', '.join(missing)}", missing)
        current = await transitions.get(booking_id)
        if current.state is not BookingState.IDLE:
            raise IllegalTransition(current.current_state, data.event.value)
        booking = await transitions.initialize(
            str(booking_id),
            builder_id=str(payload["builder_id"]),
            session_type_id=str(payload["session_type_id"]),
            client_id=payload.get("client_id"),
        )
    else:
        booking = await transitions.apply(booking_id, data.event, payload, source="api")
    return BookingResponse.from_booking(booking)
