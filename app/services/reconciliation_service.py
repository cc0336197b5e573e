"""Background sweep for bookings and effects left behind by the flow.

Runs from the Celery beat schedule. Everything it changes goes through the
Transition API with ``source="reconciliation"``.
"""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.payment import PaymentStatus, checkout_status, status_events
from app.config import Settings, settings as default_settings
from app.core.exceptions import AppException, ExternalProviderError
from app.domain.booking_state import PAYMENT_IN_FLIGHT_STATES, BookingEvent, BookingState, Effect
from app.gateways.base import GatewayType, PaymentGateway
from app.models.booking import Booking, BookingEffect
from app.services.effect_service import EFFECT_DONE, EFFECT_PENDING, EffectDispatcher
from app.services.transition_service import TransitionService

logger = logging.getLogger(__name__)

SOURCE = "reconciliation"

# Pending effects younger than this are still owned by their first dispatch
STALE_EFFECT_AGE = timedelta(minutes=5)


class ReconciliationService:
    """Resolves stale bookings and re-dispatches stuck effects."""

    def __init__(
        self,
        db: AsyncSession,
        transitions: TransitionService,
        payment_gateway: PaymentGateway,
        dispatcher: EffectDispatcher | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.transitions = transitions
        self.payment_gateway = payment_gateway
        self.dispatcher = dispatcher
        self.config = config or default_settings

    async def reconcile_stale_bookings(self, now: datetime | None = None) -> dict[str, int]:
        """Resolve bookings parked in an intermediate state past the flow expiry.

        Returns:
            Count of bookings per outcome
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(minutes=self.config.booking_flow_expiry_minutes)
        summary: dict[str, int] = {}

        for booking in await self.transitions.list_stale(cutoff):
            try:
                outcome = await self._reconcile(booking)
            except AppException as e:
                logger.warning(f"Reconciliation of booking {booking.id} failed: {e.detail}")
                outcome = "error"
            summary[outcome] = summary.get(outcome, 0) + 1

        for booking in await self._stuck_cancellations(cutoff):
            try:
                outcome = await self._finish_cancellation(booking)
            except AppException as e:
                logger.warning(f"Cancellation of booking {booking.id} not finished: {e.detail}")
                outcome = "error"
            summary[outcome] = summary.get(outcome, 0) + 1

        if summary:
            logger.info(f"Reconciled stale bookings: {summary}")
        return summary

    async def _reconcile(self, booking: Booking) -> str:
        if booking.state in PAYMENT_IN_FLIGHT_STATES and booking.payment_session_id:
            result = await self.payment_gateway.retrieve_checkout_session(
                booking.payment_session_id
            )
            if not result.success:
                raise ExternalProviderError(GatewayType.STRIPE.value, result.error_message or "")

            for inbound in status_events(result, str(booking.id)):
                booking = await self.transitions.apply(
                    booking.id, inbound.event, inbound.data, source=SOURCE
                )
            payment_status = checkout_status(result)
            if payment_status is not PaymentStatus.PENDING:
                return payment_status.value.lower()
            if result.status in ("open", "complete"):
                # Client still on the checkout page, or an async payment is settling
                return "pending"

        await self.transitions.apply(
            booking.id,
            BookingEvent.RESET,
            {"reason": f"flow abandoned in {booking.current_state}"},
            source=SOURCE,
        )
        logger.info(f"Reset abandoned booking {booking.id} from {booking.current_state}")
        return "reset"

    async def _stuck_cancellations(self, cutoff: datetime) -> list[Booking]:
        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.current_state == BookingState.CANCELLATION_REQUESTED.value,
                Booking.last_transition < cutoff,
            )
            .order_by(Booking.last_transition)
            .limit(self.config.reconciliation_batch_size)
        )
        return list(result.scalars().all())

    async def _finish_cancellation(self, booking: Booking) -> str:
        """Confirm a cancellation whose provider acknowledgement never arrived."""
        result = await self.db.execute(
            select(BookingEffect.status).where(
                BookingEffect.booking_id == booking.id,
                BookingEffect.effect == Effect.CANCEL_SCHEDULED_EVENT.value,
            )
        )
        statuses = set(result.scalars().all())
        if statuses and statuses != {EFFECT_DONE}:
            return "awaiting_provider"

        await self.transitions.apply(
            booking.id, BookingEvent.CONFIRM_CANCELLATION, {}, source=SOURCE
        )
        return "cancelled"

    async def redispatch_pending_effects(self, now: datetime | None = None) -> int:
        """Hand bookings with old pending effects back to the dispatcher."""
        if self.dispatcher is None:
            return 0
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(BookingEffect.booking_id)
            .where(
                BookingEffect.status == EFFECT_PENDING,
                BookingEffect.created_at < now - STALE_EFFECT_AGE,
            )
            .distinct()
            .limit(self.config.reconciliation_batch_size)
        )
        booking_ids = list(result.scalars().all())
        for booking_id in booking_ids:
            await self.dispatcher.dispatch(str(booking_id))
        if booking_ids:
            logger.info(f"Re-dispatched pending effects for {len(booking_ids)} bookings")
        return len(booking_ids)
