"""Inbound event types shared by the provider adapters."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.domain.booking_state import BookingEvent


@dataclass(frozen=True)
class InboundEvent:
    """One state machine event derived from a provider payload.

    ``lookup`` carries provider identifiers used to find the booking when the
    payload has no booking id.
    """

    event: BookingEvent
    data: dict[str, Any] = field(default_factory=dict)
    booking_id: str | None = None
    lookup: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookTranslation:
    """Provider delivery translated into zero or more events."""

    provider_event_id: str
    event_type: str
    events: list[InboundEvent] = field(default_factory=list)
    booking_id: str | None = None

    @property
    def is_actionable(self) -> bool:
        return bool(self.events)


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 string (``Z`` suffix allowed) to datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_booking_id(value: Any) -> str | None:
    """Canonical string form of a booking UUID, or None if it is not one."""
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None
