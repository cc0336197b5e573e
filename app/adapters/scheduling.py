"""Scheduling provider (Calendly) webhook translation.

Pure functions: payload in, ``WebhookTranslation`` out. Signature checks,
dedup and persistence happen in ``app.services.webhook_service``.
"""

from typing import Any
from urllib.parse import parse_qs

from app.adapters.events import (
    InboundEvent,
    WebhookTranslation,
    normalize_booking_id,
    parse_timestamp,
)
from app.domain.booking_state import SOURCE_SCHEDULING_PROVIDER, BookingEvent

INVITEE_CREATED = "invitee.created"
INVITEE_CANCELED = "invitee.canceled"
INVITEE_RESCHEDULED = "invitee.rescheduled"

SCHEDULED_EVENTS_URL = "https://api.calendly.com/scheduled_events"


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _event_details(payload: dict, key: str = "event") -> dict[str, Any]:
    """URI and times of the scheduled event, across payload shapes."""
    raw = payload.get(key)
    details: dict[str, Any] = {}
    if isinstance(raw, str):
        details["uri"] = raw
        raw = payload.get("scheduled_event")
    raw = _as_dict(raw)
    details.setdefault("uri", raw.get("uri"))
    if not details["uri"] and raw.get("uuid"):
        details["uri"] = f"{SCHEDULED_EVENTS_URL}/{raw['uuid']}"
    details["start_time"] = parse_timestamp(raw.get("start_time"))
    details["end_time"] = parse_timestamp(raw.get("end_time"))
    return details


def _invitee(payload: dict) -> dict:
    return _as_dict(payload.get("invitee")) or payload


def _invitee_uri(payload: dict, event_uri: str | None) -> str | None:
    invitee = _invitee(payload)
    uri = payload.get("uri") or invitee.get("uri")
    if not uri and invitee.get("uuid") and event_uri:
        uri = f"{event_uri}/invitees/{invitee['uuid']}"
    return uri


def booking_id_from_tracking(payload: dict) -> str | None:
    """Booking id carried in ``tracking.utm_content``.

    Accepts a bare id or a query string with ``booking_id``/``bookingId``.
    """
    tracking = _as_dict(payload.get("tracking")) or _as_dict(_invitee(payload).get("tracking"))
    content = tracking.get("utm_content")
    if not content:
        return None
    booking_id = normalize_booking_id(content)
    if booking_id:
        return booking_id
    params = parse_qs(str(content))
    for key in ("booking_id", "bookingId"):
        if params.get(key):
            return normalize_booking_id(params[key][0])
    return None


def provider_event_id(
    body: dict, event_type: str, invitee_uri: str | None, header_id: str | None = None
) -> str:
    """Explicit delivery id when present, else derived from event and invitee."""
    explicit = header_id or body.get("id")
    if explicit:
        return str(explicit)
    return f"{event_type}:{invitee_uri or body.get('created_at') or ''}"


def translate_scheduling_webhook(body: dict, header_id: str | None = None) -> WebhookTranslation:
    """Map a scheduling webhook body onto state machine events."""
    event_type = str(body.get("event") or "")
    payload = _as_dict(body.get("payload"))
    booking_id = booking_id_from_tracking(payload)

    if event_type == INVITEE_RESCHEDULED:
        new_key = "new_event" if payload.get("new_event") else "event"
        new_event = _event_details(payload, new_key)
        old_event = _event_details(payload, "old_event")
        invitee_uri = _invitee_uri(payload, new_event["uri"])
        lookup = {"scheduling_event_uri": old_event["uri"]} if old_event["uri"] else {}
        data = {
            "scheduling_event_uri": new_event["uri"],
            "scheduling_invitee_uri": invitee_uri,
            "start_time": new_event["start_time"],
            "end_time": new_event["end_time"],
            "previous_start_time": old_event["start_time"],
        }
        return WebhookTranslation(
            provider_event_id=provider_event_id(body, event_type, invitee_uri, header_id),
            event_type=event_type,
            booking_id=booking_id,
            events=[InboundEvent(BookingEvent.RESCHEDULE_EVENT, _compact(data), booking_id, lookup)],
        )

    details = _event_details(payload)
    invitee_uri = _invitee_uri(payload, details["uri"])
    event_id = provider_event_id(body, event_type, invitee_uri, header_id)
    lookup = {
        key: value
        for key, value in (
            ("scheduling_event_uri", details["uri"]),
            ("scheduling_invitee_uri", invitee_uri),
        )
        if value
    }

    if event_type == INVITEE_CREATED:
        invitee = _invitee(payload)
        old_invitee = payload.get("old_invitee") or invitee.get("old_invitee")
        if old_invitee:
            # Calendly reports a reschedule as a new invitee linked to the old one
            data = {
                "scheduling_event_uri": details["uri"],
                "scheduling_invitee_uri": invitee_uri,
                "start_time": details["start_time"],
                "end_time": details["end_time"],
            }
            old_event_uri = str(old_invitee).split("/invitees/")[0]
            return WebhookTranslation(
                provider_event_id=event_id,
                event_type=event_type,
                booking_id=booking_id,
                events=[
                    InboundEvent(
                        BookingEvent.RESCHEDULE_EVENT,
                        _compact(data),
                        booking_id,
                        {"scheduling_event_uri": old_event_uri},
                    )
                ],
            )
        data = {
            "scheduling_event_uri": details["uri"],
            "scheduling_invitee_uri": invitee_uri,
            "start_time": details["start_time"],
            "end_time": details["end_time"],
            "client_email": invitee.get("email"),
        }
        return WebhookTranslation(
            provider_event_id=event_id,
            event_type=event_type,
            booking_id=booking_id,
            events=[InboundEvent(BookingEvent.SCHEDULE_EVENT, _compact(data), booking_id, lookup)],
        )

    if event_type == INVITEE_CANCELED:
        invitee = _invitee(payload)
        if payload.get("rescheduled") or invitee.get("rescheduled"):
            # The replacement invitee.created carries the new slot
            return WebhookTranslation(event_id, event_type, booking_id=booking_id)
        cancellation = _as_dict(payload.get("cancellation")) or _as_dict(invitee.get("cancellation"))
        data = {
            "reason": cancellation.get("reason") or "Cancelled via scheduling provider",
            "canceled_by": cancellation.get("canceled_by"),
            "source": SOURCE_SCHEDULING_PROVIDER,
            "occurred_at": parse_timestamp(cancellation.get("created_at") or payload.get("updated_at")),
        }
        return WebhookTranslation(
            provider_event_id=event_id,
            event_type=event_type,
            booking_id=booking_id,
            events=[InboundEvent(BookingEvent.REQUEST_CANCELLATION, _compact(data), booking_id, lookup)],
        )

    return WebhookTranslation(event_id, event_type, booking_id=booking_id)


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}
