"""Shared test constants and provider payload builders."""
import uuid

BUILDER_ID = "builder-123"
EVENT_URI = "https://api.calendly.com/scheduled_events/EVT123"
INVITEE_URI = "https://api.calendly.com/scheduled_events/EVT123/invitees/INV456"
CALENDLY_KEY = "calendly-test-signing-key"
STRIPE_WEBHOOK_SECRET = "whsec_test"


def invitee_created(booking_id, **payload):
    """Calendly invitee.created body tracked to ``booking_id``."""
    body = {
        "event": "invitee.created",
        "created_at": "2026-11-01T10:00:00Z",
        "payload": {
            "uri": INVITEE_URI,
            "email": "client@example.com",
            "event": EVENT_URI,
            "scheduled_event": {
                "uri": EVENT_URI,
                "start_time": "2026-11-02T15:00:00Z",
                "end_time": "2026-11-02T16:00:00Z",
            },
            "tracking": {"utm_content": str(booking_id)},
        },
    }
    body["payload"].update(payload)
    return body


def checkout_event(event_type, booking_id, session_id="cs_test_abc123", **obj):
    """Stripe checkout.session.* event for ``booking_id``."""
    return {
        "id": f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "metadata": {"booking_id": str(booking_id)},
                **obj,
            }
        },
    }
