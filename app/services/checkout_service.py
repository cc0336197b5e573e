"""Checkout orchestration on top of the Transition API.

Creates hosted checkout sessions for bookings in the payment path and
resolves a returning client's session to a payment status.
"""

import logging
import uuid
from dataclasses import dataclass
from urllib.parse import urlencode

from app.adapters.payment import PaymentStatus, checkout_status, status_events
from app.config import Settings, settings as default_settings
from app.core.exceptions import ExternalProviderError, IllegalTransition, NotFoundError
from app.core.security import mask_identifier
from app.domain.booking_state import BookingEvent, BookingState
from app.gateways.base import GatewayType, PaymentGateway
from app.models.booking import Booking
from app.models.session_type import SessionType
from app.services.transition_service import TransitionService

logger = logging.getLogger(__name__)

# Stripe substitutes the session id into the success URL
SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


@dataclass
class CheckoutLink:
    booking: Booking
    session_id: str
    url: str | None


@dataclass
class CheckoutStatus:
    booking: Booking
    payment_status: PaymentStatus
    payment_intent_id: str | None


class CheckoutService:
    """Payment step of the booking flow."""

    def __init__(
        self,
        transitions: TransitionService,
        payment_gateway: PaymentGateway,
        config: Settings | None = None,
    ):
        self.transitions = transitions
        self.payment_gateway = payment_gateway
        self.config = config or default_settings

    def _return_urls(self, booking: Booking, return_url: str | None) -> tuple[str, str]:
        base = return_url or f"{self.config.app_base_url}/booking/payment"
        separator = "&" if "?" in base else "?"
        success = (
            f"{base}{separator}session_id={SESSION_ID_PLACEHOLDER}&"
            + urlencode({"bookingId": str(booking.id), "status": "success"})
        )
        cancel = f"{base}{separator}" + urlencode(
            {"bookingId": str(booking.id), "status": "cancelled"}
        )
        return success, cancel

    async def create_checkout(
        self, booking_id: str | uuid.UUID, return_url: str | None = None
    ) -> CheckoutLink:
        """Open a checkout session and move the booking to PAYMENT_PENDING.

        Raises:
            IllegalTransition: booking is not in the payment path
            ExternalProviderError: the provider refused or was unreachable
        """
        booking = await self.transitions.get(booking_id)

        if booking.state is BookingState.PAYMENT_PENDING and booking.payment_session_id:
            existing = await self.payment_gateway.retrieve_checkout_session(
                booking.payment_session_id
            )
            if existing.success and existing.status == "open" and existing.url:
                logger.info(f"Reusing open checkout session for booking {booking.id}")
                return CheckoutLink(booking, existing.session_id, existing.url)
            if not existing.success or checkout_status(existing) is not PaymentStatus.FAILED:
                raise IllegalTransition(booking.current_state, BookingEvent.PAYMENT_PENDING.value)
            # Expired session: record the failure so a fresh attempt can start
            for inbound in status_events(existing, str(booking.id)):
                booking = await self.transitions.apply(
                    booking.id, inbound.event, inbound.data, source="checkout"
                )

        if booking.state in (BookingState.CALENDLY_EVENT_SCHEDULED, BookingState.PAYMENT_FAILED):
            booking = await self.transitions.apply(booking.id, BookingEvent.INITIATE_PAYMENT)
        if booking.state is not BookingState.PAYMENT_REQUIRED:
            raise IllegalTransition(booking.current_state, BookingEvent.PAYMENT_PENDING.value)

        session_type = await self.transitions.db.get(SessionType, booking.session_type_id)
        description = session_type.title if session_type else "Session booking"
        success_url, cancel_url = self._return_urls(booking, return_url)

        result = await self.payment_gateway.create_checkout_session(
            amount=booking.amount,
            currency=booking.currency,
            booking_id=str(booking.id),
            description=description,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"builder_id": booking.builder_id},
            customer_email=booking.client_email,
            idempotency_key=f"checkout-{booking.id}-{booking.version}",
        )
        if not result.success or not result.session_id:
            message = result.error_message or "Checkout session could not be created"
            await self.transitions.record_error(booking.id, "checkout_failed", message)
            raise ExternalProviderError(GatewayType.STRIPE.value, message)

        booking = await self.transitions.apply(
            booking.id,
            BookingEvent.PAYMENT_PENDING,
            {"payment_session_id": result.session_id},
        )
        logger.info(
            f"Checkout session {mask_identifier(result.session_id)} created for booking {booking.id}"
        )
        return CheckoutLink(booking, result.session_id, result.url)

    async def check_status(self, session_id: str) -> CheckoutStatus:
        """Resolve a checkout session and apply whatever it tells us.

        Safe to call repeatedly; events already applied by the webhook path
        are no-ops.
        """
        result = await self.payment_gateway.retrieve_checkout_session(session_id)
        if not result.success:
            raise ExternalProviderError(GatewayType.STRIPE.value, result.error_message or "")

        booking_id = result.metadata.get("booking_id") if result.metadata else None
        if booking_id:
            booking = await self.transitions.get(booking_id)
        else:
            booking = await self.transitions.find_by(payment_session_id=session_id)
        if booking is None:
            raise NotFoundError("Booking", f"checkout session {mask_identifier(session_id)}")

        if booking.payment_session_id == session_id:
            for inbound in status_events(result, str(booking.id)):
                try:
                    booking = await self.transitions.apply(
                        booking.id, inbound.event, inbound.data, source="status_check"
                    )
                except IllegalTransition:
                    # Webhook path got further already (e.g. confirmed or cancelled)
                    logger.info(
                        f"Status check for booking {booking.id} skipped {inbound.event.value} "
                        f"in state {booking.current_state}"
                    )
                    booking = await self.transitions.get(booking.id)
                    break
        else:
            logger.warning(
                f"Status check for superseded session {mask_identifier(session_id)} "
                f"on booking {booking.id}"
            )

        return CheckoutStatus(
            booking=booking,
            payment_status=checkout_status(result),
            payment_intent_id=result.payment_intent_id or booking.payment_intent_id,
        )
