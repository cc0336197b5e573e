"""Notification Service for booking emails.

Sends structured notifications through SendGrid dynamic templates. Template
formatting lives in SendGrid; this service only supplies template data.
"""

import logging
from typing import Any

import httpx

from app.config import Settings, settings as default_settings
from app.models.booking import Booking

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class NotificationService:
    """Service for sending booking lifecycle emails."""

    # Notification types
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYMENT_FAILED = "payment_failed"

    def __init__(self, config: Settings | None = None) -> None:
        self.config = config or default_settings
        self._http_client: httpx.AsyncClient | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    @property
    def enabled(self) -> bool:
        return bool(self.config.sendgrid_api_key)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _template_for(self, notification_type: str) -> str | None:
        return {
            self.BOOKING_CONFIRMED: self.config.sendgrid_template_booking_confirmed,
            self.BOOKING_CANCELLED: self.config.sendgrid_template_booking_cancelled,
            self.PAYMENT_FAILED: self.config.sendgrid_template_payment_failed,
        }.get(notification_type)

    async def send_template_email(
        self,
        to_email: str,
        template_id: str,
        template_data: dict[str, Any],
    ) -> bool:
        """Send an email via a SendGrid dynamic template.

        Returns:
            bool: True if SendGrid accepted the message
        """
        if not self.enabled:
            return False

        headers = {
            "Authorization": f"Bearer {self.config.sendgrid_api_key}",
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "personalizations": [
                {
                    "to": [{"email": to_email}],
                    "dynamic_template_data": template_data,
                }
            ],
            "from": {
                "email": self.config.email_from_address,
                "name": self.config.email_from_name,
            },
            "template_id": template_id,
        }

        try:
            response = await self.http_client.post(SENDGRID_SEND_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"SendGrid request failed: {e}")
            return False
        if response.status_code not in (200, 202):
            logger.error(f"SendGrid rejected message: {response.status_code} {response.text[:200]}")
            return False
        return True

    def _booking_data(self, booking: Booking) -> dict[str, Any]:
        return {
            "booking_id": str(booking.id),
            "builder_id": booking.builder_id,
            "session_type_id": str(booking.session_type_id),
            "start_time": booking.start_time.isoformat() if booking.start_time else None,
            "end_time": booking.end_time.isoformat() if booking.end_time else None,
            "amount": booking.amount,
            "currency": booking.currency,
            "booking_url": f"{self.config.app_base_url}/booking/confirmation?bookingId={booking.id}",
        }

    async def notify(self, notification_type: str, booking: Booking, **extra: Any) -> bool | None:
        """Send one booking notification.

        Returns:
            None when skipped (no recipient, provider or template), else whether it was sent
        """
        template_id = self._template_for(notification_type)
        if not self.enabled or not template_id or not booking.client_email:
            logger.info(
                f"Skipping {notification_type} notification for booking {booking.id}: "
                "email delivery not configured or no recipient"
            )
            return None

        data = self._booking_data(booking)
        data.update(extra)
        sent = await self.send_template_email(booking.client_email, template_id, data)
        if sent:
            logger.info(f"Sent {notification_type} notification for booking {booking.id}")
        return sent

    async def notify_booking_confirmed(self, booking: Booking) -> bool | None:
        return await self.notify(self.BOOKING_CONFIRMED, booking)

    async def notify_booking_cancelled(self, booking: Booking) -> bool | None:
        return await self.notify(
            self.BOOKING_CANCELLED,
            booking,
            cancellation_reason=booking.cancellation_reason,
            refunded=bool(booking.refund_id),
        )

    async def notify_payment_failed(self, booking: Booking) -> bool | None:
        return await self.notify(
            self.PAYMENT_FAILED,
            booking,
            error_message=booking.last_error_message,
            retry_url=f"{self.config.app_base_url}/booking/payment?bookingId={booking.id}",
        )


# Singleton instance
notification_service = NotificationService()
