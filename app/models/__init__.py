"""Database models."""

from app.models.booking import Booking, BookingEffect, BookingTransition
from app.models.session_type import SessionType
from app.models.webhook import WebhookEvent

__all__ = [
    # Booking
    "Booking",
    "BookingTransition",
    "BookingEffect",
    # Catalog
    "SessionType",
    # Webhooks
    "WebhookEvent",
]
