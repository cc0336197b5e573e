"""Execution of side effects described by booking transitions.

Transitions write ``BookingEffect`` rows in the same commit as the state
change. A dispatcher hands the booking to ``EffectExecutor`` after commit;
rows that fail stay pending until ``effect_max_attempts`` and are picked up
again by the reconciliation sweep.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.config import Settings, settings as default_settings
from app.core.encryption import EncryptionService, get_encryption_service
from app.core.exceptions import ExternalProviderError
from app.core.security import SENSITIVE_FIELDS, mask_identifier
from app.domain.booking_state import Effect
from app.gateways.base import GatewayType, PaymentGateway, SchedulingGateway
from app.models.booking import Booking, BookingEffect
from app.services.gateway_service import gateway_service
from app.services.notification_service import NotificationService, notification_service

logger = logging.getLogger(__name__)

EFFECT_PENDING = "pending"
EFFECT_DONE = "done"
EFFECT_FAILED = "failed"

# Provider references each outbox row carries for the flow it was written in
EFFECT_REFERENCE_FIELDS = (
    "scheduling_event_uri",
    "payment_session_id",
    "payment_intent_id",
    "cancellation_reason",
)


class EffectExecutor:
    """Runs pending outbox rows for one booking."""

    def __init__(
        self,
        db: AsyncSession,
        payment_gateway: PaymentGateway | None = None,
        scheduling_gateway: SchedulingGateway | None = None,
        notifier: NotificationService | None = None,
        config: Settings | None = None,
        encryption: EncryptionService | None = None,
    ):
        self.db = db
        self.encryption = encryption or get_encryption_service()
        self.payment_gateway = payment_gateway or gateway_service.payment
        self.scheduling_gateway = scheduling_gateway or gateway_service.scheduling
        self.notifier = notifier or notification_service
        self.config = config or default_settings

    async def run_pending(self, booking_id: str | uuid.UUID) -> dict[str, int]:
        """Execute every pending effect for a booking, oldest first.

        Returns:
            Count of effects per resulting status
        """
        summary = {EFFECT_DONE: 0, EFFECT_FAILED: 0, EFFECT_PENDING: 0}
        booking = await self.db.get(Booking, uuid.UUID(str(booking_id)))
        if booking is None:
            logger.warning(f"Effects requested for unknown booking {booking_id}")
            return summary

        result = await self.db.execute(
            select(BookingEffect)
            .where(
                BookingEffect.booking_id == booking.id,
                BookingEffect.status == EFFECT_PENDING,
            )
            .order_by(BookingEffect.created_at)
        )
        rows = list(result.scalars().all())

        for index, row in enumerate(rows):
            row.attempts += 1
            try:
                await self._execute(row, booking)
            except ExternalProviderError as e:
                row.last_error = e.message
                if row.attempts >= self.config.effect_max_attempts:
                    row.status = EFFECT_FAILED
                    logger.error(
                        f"Effect {row.effect} for booking {booking.id} failed permanently "
                        f"after {row.attempts} attempts: {e.message}"
                    )
                else:
                    logger.warning(
                        f"Effect {row.effect} for booking {booking.id} failed "
                        f"(attempt {row.attempts}): {e.message}"
                    )
            else:
                row.status = EFFECT_DONE
                row.completed_at = datetime.now(UTC)
                row.last_error = None

            try:
                await self.db.commit()
            except StaleDataError:
                # A transition won the race for the booking row; the sweep retries the rest
                await self.db.rollback()
                logger.warning(f"Booking {booking.id} changed while running effects; deferring")
                summary[EFFECT_PENDING] += len(rows) - index
                return summary
            summary[row.status] += 1

        return summary

    async def _execute(self, row: BookingEffect, booking: Booking) -> None:
        effect = Effect(row.effect)
        if effect is Effect.SEND_BOOKING_CONFIRMATION:
            await self._notify(self.notifier.notify_booking_confirmed(booking))
        elif effect is Effect.SEND_CANCELLATION_NOTICE:
            await self._notify(self.notifier.notify_booking_cancelled(booking))
        elif effect is Effect.SEND_PAYMENT_FAILED_NOTICE:
            await self._notify(self.notifier.notify_payment_failed(booking))
        elif effect is Effect.CANCEL_SCHEDULED_EVENT:
            await self._cancel_scheduled_event(row, booking)
        elif effect is Effect.REFUND_PAYMENT:
            await self._refund(row, booking)

    async def _notify(self, sending) -> None:
        sent = await sending
        if sent is False:
            raise ExternalProviderError("sendgrid", "email delivery failed")

    def _references(self, row: BookingEffect, booking: Booking) -> dict:
        """Provider references recorded with the effect.

        Rows written without them fall back to the booking's current values.
        """
        recorded = self.encryption.decrypt_fields(row.payload or {}, SENSITIVE_FIELDS)
        if not any(field in recorded for field in EFFECT_REFERENCE_FIELDS):
            return {field: getattr(booking, field) for field in EFFECT_REFERENCE_FIELDS}
        return {field: recorded.get(field) for field in EFFECT_REFERENCE_FIELDS}

    async def _cancel_scheduled_event(self, row: BookingEffect, booking: Booking) -> None:
        references = self._references(row, booking)
        if not references["scheduling_event_uri"]:
            return
        result = await self.scheduling_gateway.cancel_event(
            references["scheduling_event_uri"], references["cancellation_reason"]
        )
        if not result.success:
            raise ExternalProviderError(GatewayType.CALENDLY.value, result.error_message)
        logger.info(
            f"Cancelled scheduled event for booking {booking.id}"
            + (" (already cancelled)" if result.already_cancelled else "")
        )

    async def _refund(self, row: BookingEffect, booking: Booking) -> None:
        references = self._references(row, booking)
        payment_intent_id = references["payment_intent_id"]
        session_id = references["payment_session_id"]
        if not payment_intent_id and session_id:
            session = await self.payment_gateway.retrieve_checkout_session(session_id)
            if not session.success:
                raise ExternalProviderError(GatewayType.STRIPE.value, session.error_message)
            payment_intent_id = session.payment_intent_id
        if not payment_intent_id:
            raise ExternalProviderError(
                GatewayType.STRIPE.value, f"no payment to refund for booking {booking.id}"
            )

        # One refund per payment; a reset booking can be paid again under a new intent
        result = await self.payment_gateway.process_refund(
            payment_intent_id,
            amount=None,
            reason=references["cancellation_reason"] or "Booking cancelled",
            idempotency_key=f"refund-{booking.id}-{payment_intent_id}",
        )
        if not result.success:
            raise ExternalProviderError(GatewayType.STRIPE.value, result.error_message)

        row.payload = {
            **(row.payload or {}),
            **self.encryption.encrypt_fields(
                {"payment_intent_id": payment_intent_id, "refund_id": result.refund_id},
                SENSITIVE_FIELDS,
            ),
        }
        current = booking.payment_intent_id or booking.payment_session_id
        if current and current in (payment_intent_id, session_id):
            booking.payment_intent_id = payment_intent_id
            booking.refund_id = result.refund_id
        logger.info(
            f"Refunded payment {mask_identifier(payment_intent_id)} for booking {booking.id} "
            f"(refund {mask_identifier(result.refund_id)})"
        )


class EffectDispatcher(ABC):
    """Hands committed effects to whatever executes them."""

    @abstractmethod
    async def dispatch(self, booking_id: str) -> None:
        """Schedule execution of pending effects for a booking."""


class CeleryEffectDispatcher(EffectDispatcher):
    """Queues effect execution on the Celery worker."""

    async def dispatch(self, booking_id: str) -> None:
        from app.tasks import execute_booking_effects

        execute_booking_effects.delay(str(booking_id))


class InlineEffectDispatcher(EffectDispatcher):
    """Runs effects in-process right after commit (development and tests)."""

    def __init__(self, executor: EffectExecutor):
        self.executor = executor

    async def dispatch(self, booking_id: str) -> None:
        await self.executor.run_pending(booking_id)
