"""Webhook intake: dedup, apply through the Transition API, retry queue.

Providers are acknowledged once a delivery is stored. Processing failures are
retried on ``webhook_retry_schedule_minutes`` and dead-lettered when the
retries run out.
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.events import InboundEvent, WebhookTranslation, normalize_booking_id
from app.adapters.payment import PAYMENT_INTENT_FAILED, translate_payment_event
from app.adapters.scheduling import translate_scheduling_webhook
from app.config import Settings, settings as default_settings
from app.core.exceptions import ConflictingState, IllegalTransition, NotFoundError
from app.core.security import mask_identifier
from app.domain.booking_state import BookingEvent, BookingState
from app.models.booking import Booking
from app.models.webhook import WebhookEvent
from app.services.transition_service import TransitionService

logger = logging.getLogger(__name__)

PROVIDER_SCHEDULING = "scheduling"
PROVIDER_PAYMENT = "payment"

STATUS_RECEIVED = "received"
STATUS_PROCESSED = "processed"
STATUS_IGNORED = "ignored"
STATUS_RETRYING = "retrying"
STATUS_DEAD_LETTER = "dead_letter"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _booking_uuid(value: str | None) -> uuid.UUID | None:
    normalized = normalize_booking_id(value)
    return uuid.UUID(normalized) if normalized else None


class WebhookService:
    """Stores, dedups and applies provider deliveries."""

    def __init__(
        self,
        db: AsyncSession,
        transitions: TransitionService,
        config: Settings | None = None,
    ):
        self.db = db
        self.transitions = transitions
        self.config = config or default_settings

    async def receive(
        self,
        provider: str,
        translation: WebhookTranslation,
        payload: dict[str, Any],
    ) -> tuple[WebhookEvent, bool]:
        """Store a verified delivery and process it once.

        Returns:
            Tuple of (record, duplicate)
        """
        existing = await self._find(provider, translation.provider_event_id)
        if existing is not None:
            logger.info(
                f"Duplicate {provider} webhook {translation.provider_event_id} "
                f"({translation.event_type}) ignored; status={existing.status}"
            )
            return existing, True

        record = WebhookEvent(
            provider=provider,
            provider_event_id=translation.provider_event_id,
            event_type=translation.event_type,
            booking_id=_booking_uuid(translation.booking_id),
            payload=jsonable_encoder(payload),
            status=STATUS_RECEIVED,
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event got there first
            await self.db.rollback()
            existing = await self._find(provider, translation.provider_event_id)
            logger.info(f"Duplicate {provider} webhook {translation.provider_event_id} ignored")
            return existing, True

        await self.process(record, translation)
        return record, False

    async def _find(self, provider: str, provider_event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.provider_event_id == provider_event_id,
            )
        )
        return result.scalar_one_or_none()

    def _translate(self, record: WebhookEvent) -> WebhookTranslation:
        if record.provider == PROVIDER_SCHEDULING:
            return translate_scheduling_webhook(record.payload, header_id=record.provider_event_id)
        return translate_payment_event(record.payload)

    async def process(
        self, record: WebhookEvent, translation: WebhookTranslation | None = None
    ) -> WebhookEvent:
        """Apply a stored delivery, recording the outcome on the record."""
        translation = translation or self._translate(record)
        provider = record.provider
        try:
            outcome = await self._apply(provider, translation)
        except ConflictingState as e:
            return await self._fail(record, e.message, dead=True)
        except Exception as e:
            logger.exception(
                f"Processing {provider} webhook {record.provider_event_id} "
                f"({record.event_type}) failed"
            )
            return await self._fail(record, str(getattr(e, "detail", e)))

        await self.db.refresh(record)
        record.attempts += 1
        record.status = outcome
        record.processed_at = _utcnow()
        record.next_attempt_at = None
        record.last_error = None
        await self.db.commit()
        logger.info(
            f"{provider} webhook {record.provider_event_id} ({record.event_type}) {outcome}"
        )
        return record

    async def _resolve_booking(self, translation: WebhookTranslation) -> Booking | None:
        if translation.booking_id:
            booking_uuid = _booking_uuid(translation.booking_id)
            booking = await self.db.get(Booking, booking_uuid) if booking_uuid else None
            if booking:
                return booking
        for inbound in translation.events:
            booking = await self.transitions.find_by(**inbound.lookup)
            if booking:
                return booking
        return None

    def _is_stale_session(self, booking: Booking, inbound: InboundEvent) -> bool:
        """Event for a checkout session the booking has since replaced."""
        session_id = inbound.data.get("payment_session_id") or inbound.lookup.get(
            "payment_session_id"
        )
        return bool(
            session_id and booking.payment_session_id and session_id != booking.payment_session_id
        )

    def _paid_event(self, translation: WebhookTranslation) -> InboundEvent | None:
        """The payment success in a delivery, when it names a refundable payment."""
        for inbound in translation.events:
            if inbound.event is BookingEvent.PAYMENT_SUCCEEDED and inbound.data.get(
                "payment_intent_id"
            ):
                return inbound
        return None

    async def _refund_unclaimed(self, booking: Booking, translation: WebhookTranslation) -> bool:
        paid = self._paid_event(translation)
        if paid is None:
            return False
        await self.transitions.refund_unclaimed_payment(
            booking.id,
            paid.data["payment_intent_id"],
            paid.data.get("payment_session_id") or paid.lookup.get("payment_session_id"),
        )
        return True

    async def _apply(self, provider: str, translation: WebhookTranslation) -> str:
        if not translation.is_actionable:
            return STATUS_IGNORED

        booking = await self._resolve_booking(translation)
        if booking is None:
            raise NotFoundError("Booking", translation.booking_id or translation.provider_event_id)

        source = f"{provider}_webhook"
        for inbound in translation.events:
            if provider == PROVIDER_PAYMENT and self._is_stale_session(booking, inbound):
                logger.warning(
                    f"Ignoring {inbound.event.value} for superseded checkout session on booking "
                    f"{booking.id} (current {mask_identifier(booking.payment_session_id)})"
                )
                if await self._refund_unclaimed(booking, translation):
                    return STATUS_PROCESSED
                return STATUS_IGNORED

            event = inbound.event
            if (
                provider == PROVIDER_PAYMENT
                and event is BookingEvent.PAYMENT_FAILED
                and translation.event_type == PAYMENT_INTENT_FAILED
                and booking.payment_session_id
            ):
                # Declines inside hosted checkout can be retried on the same session;
                # the session's own outcome moves the state
                await self.transitions.record_error(
                    booking.id, inbound.data["error_code"], inbound.data["error_message"]
                )
                return STATUS_PROCESSED
            if (
                event is BookingEvent.REQUEST_CANCELLATION
                and booking.state is BookingState.CANCELLATION_REQUESTED
            ):
                # Provider acknowledging a cancellation we asked for
                event = BookingEvent.CONFIRM_CANCELLATION
            try:
                booking = await self.transitions.apply(
                    booking.id, event, inbound.data, source=source
                )
            except IllegalTransition:
                booking = await self.transitions.get(booking.id)
                # PAYMENT_REQUIRED may still be waiting on its PAYMENT_PENDING commit
                if (
                    provider == PROVIDER_PAYMENT
                    and booking.state is not BookingState.PAYMENT_REQUIRED
                    and await self._refund_unclaimed(booking, translation)
                ):
                    return STATUS_PROCESSED
                raise
        return STATUS_PROCESSED

    async def _fail(self, record: WebhookEvent, message: str, dead: bool = False) -> WebhookEvent:
        await self.db.rollback()
        await self.db.refresh(record)
        record.attempts += 1
        record.last_error = message[:2000]

        retries_used = record.attempts - 1
        schedule = self.config.webhook_retry_schedule_minutes
        if dead or retries_used >= min(self.config.webhook_max_attempts, len(schedule)):
            record.status = STATUS_DEAD_LETTER
            record.next_attempt_at = None
            logger.error(
                f"{record.provider} webhook {record.provider_event_id} ({record.event_type}) "
                f"moved to dead letter after {record.attempts} attempts: {message}"
            )
        else:
            delay = timedelta(minutes=schedule[retries_used])
            record.status = STATUS_RETRYING
            record.next_attempt_at = _utcnow() + delay
            logger.warning(
                f"{record.provider} webhook {record.provider_event_id} failed "
                f"(attempt {record.attempts}); retrying in {delay}"
            )
        await self.db.commit()
        return record

    async def retry_due(self, now: datetime | None = None, limit: int = 100) -> dict[str, int]:
        """Re-process deliveries whose retry time has come."""
        now = now or _utcnow()
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == STATUS_RETRYING,
                WebhookEvent.next_attempt_at <= now,
            )
            .order_by(WebhookEvent.next_attempt_at)
            .limit(limit)
        )
        summary: dict[str, int] = {}
        for record in list(result.scalars().all()):
            record = await self.process(record)
            summary[record.status] = summary.get(record.status, 0) + 1
        return summary
