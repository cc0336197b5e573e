"""Payment provider (Stripe) event translation.

Webhook deliveries and status-check polling both end up here, so the two
paths hand the Transition API the same events.
"""

from enum import Enum
from typing import Any

from app.adapters.events import InboundEvent, WebhookTranslation, normalize_booking_id
from app.domain.booking_state import BookingEvent
from app.gateways.base import CheckoutSessionResult

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHECKOUT_ASYNC_FAILED = "checkout.session.async_payment_failed"
CHECKOUT_EXPIRED = "checkout.session.expired"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"

PAID_STATUSES = ("paid", "no_payment_required")


class PaymentStatus(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    PENDING = "PENDING"


def _succeeded(
    session_id: str | None, payment_intent_id: str | None, booking_id: str | None, lookup: dict
) -> list[InboundEvent]:
    data = {"payment_intent_id": payment_intent_id} if payment_intent_id else {}
    succeeded = dict(data)
    if session_id:
        succeeded["payment_session_id"] = session_id
    return [
        InboundEvent(BookingEvent.PAYMENT_PROCESSING, data, booking_id, lookup),
        InboundEvent(BookingEvent.PAYMENT_SUCCEEDED, succeeded, booking_id, lookup),
    ]


def _failed(
    code: str, message: str, booking_id: str | None, lookup: dict, **extra: Any
) -> list[InboundEvent]:
    data = {"error_code": code, "error_message": message}
    data.update({key: value for key, value in extra.items() if value})
    return [InboundEvent(BookingEvent.PAYMENT_FAILED, data, booking_id, lookup)]


def _payment_intent_id(obj: dict) -> str | None:
    value = obj.get("payment_intent")
    if isinstance(value, dict):
        return value.get("id")
    return value


def translate_payment_event(event: dict) -> WebhookTranslation:
    """Map a verified payment webhook event onto state machine events."""
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    booking_id = normalize_booking_id(metadata.get("booking_id") or obj.get("client_reference_id"))
    event_id = str(event.get("id") or f"{event_type}:{obj.get('id')}")

    events: list[InboundEvent] = []
    if event_type.startswith("checkout.session."):
        session_id = obj.get("id")
        lookup = {"payment_session_id": session_id} if session_id else {}
        intent_id = _payment_intent_id(obj)

        if event_type in (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_SUCCEEDED):
            if event_type == CHECKOUT_ASYNC_SUCCEEDED or obj.get("payment_status") in PAID_STATUSES:
                events = _succeeded(session_id, intent_id, booking_id, lookup)
            else:
                # Delayed payment methods settle later via async_payment_*
                data = {"payment_intent_id": intent_id} if intent_id else {}
                events = [InboundEvent(BookingEvent.PAYMENT_PROCESSING, data, booking_id, lookup)]
        elif event_type == CHECKOUT_ASYNC_FAILED:
            events = _failed(
                "async_payment_failed",
                "The payment could not be completed",
                booking_id,
                lookup,
                payment_intent_id=intent_id,
                payment_session_id=session_id,
            )
        elif event_type == CHECKOUT_EXPIRED:
            events = _failed(
                "checkout_expired",
                "Checkout session expired before payment",
                booking_id,
                lookup,
                payment_session_id=session_id,
            )

    elif event_type == PAYMENT_INTENT_SUCCEEDED:
        events = _succeeded(None, obj.get("id"), booking_id, {})
    elif event_type == PAYMENT_INTENT_FAILED:
        error = obj.get("last_payment_error") or {}
        events = _failed(
            error.get("code") or "payment_failed",
            error.get("message") or "Payment failed",
            booking_id,
            {},
            payment_intent_id=obj.get("id"),
        )

    return WebhookTranslation(
        provider_event_id=event_id,
        event_type=event_type,
        events=events,
        booking_id=booking_id,
    )


def checkout_status(result: CheckoutSessionResult) -> PaymentStatus:
    """Collapse a checkout session into PAID, FAILED or PENDING."""
    if result.payment_status in PAID_STATUSES:
        return PaymentStatus.PAID
    if result.status == "expired":
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def status_events(result: CheckoutSessionResult, booking_id: str | None = None) -> list[InboundEvent]:
    """Events the status-check path applies for a polled checkout session."""
    lookup = {"payment_session_id": result.session_id} if result.session_id else {}
    status = checkout_status(result)
    if status is PaymentStatus.PAID:
        return _succeeded(result.session_id, result.payment_intent_id, booking_id, lookup)
    if status is PaymentStatus.FAILED:
        return _failed(
            "checkout_expired",
            "Checkout session expired before payment",
            booking_id,
            lookup,
            payment_session_id=result.session_id,
        )
    if result.status == "complete":
        data = {"payment_intent_id": result.payment_intent_id} if result.payment_intent_id else {}
        return [InboundEvent(BookingEvent.PAYMENT_PROCESSING, data, booking_id, lookup)]
    return []
