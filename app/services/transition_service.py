"""Transition API: the only writer of booking state.

Each call loads the booking, runs the pure state machine, and persists the
new state, the transition log row and the effect outbox rows in a single
commit guarded by the booking's version column. Effects are dispatched only
after that commit succeeds.
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.adapters.events import parse_timestamp
from app.config import Settings, settings as default_settings
from app.core.encryption import EncryptionService, get_encryption_service
from app.core.exceptions import (
    ConcurrencyConflict,
    ConflictingState,
    IllegalTransition,
    MissingPrerequisite,
    NotFoundError,
    ValidationError,
)
from app.core.security import (
    SENSITIVE_FIELDS,
    create_recovery_token,
    mask_identifier,
    sanitize_for_logging,
    verify_recovery_token,
)
from app.domain.booking_state import (
    INTERMEDIATE_STATES,
    REPLAY_IDENTITY_FIELDS,
    BookingContext,
    BookingEvent,
    BookingState,
    Effect,
    TransitionResult,
    transition,
)
from app.models.booking import Booking, BookingEffect, BookingTransition
from app.models.session_type import SessionType
from app.services.effect_service import EFFECT_REFERENCE_FIELDS, EffectDispatcher

logger = logging.getLogger(__name__)

# States where the client leaves the site or hits an error and may need to resume
RECOVERY_STATES = frozenset(
    {
        BookingState.SESSION_TYPE_SELECTED,
        BookingState.CALENDLY_SCHEDULING_INITIATED,
        BookingState.PAYMENT_PENDING,
        BookingState.PAYMENT_FAILED,
    }
)

# Payload keys whose values live in differently named booking columns
_COLUMN_FOR_FIELD = {"error_code": "last_error_code"}

_DATETIME_COLUMNS = frozenset(
    {"start_time", "end_time", "rescheduled_from", "cancelled_at", "last_error_at"}
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_uuid(value: str | uuid.UUID, resource: str = "Booking") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(resource, str(value))


def _same(left: Any, right: Any) -> bool:
    """Compare stored and incoming values, tolerating naive UTC datetimes."""
    if isinstance(left, datetime) and isinstance(right, str):
        right = parse_timestamp(right) or right
    if isinstance(left, datetime) and isinstance(right, datetime):
        if left.tzinfo is None:
            left = left.replace(tzinfo=UTC)
        if right.tzinfo is None:
            right = right.replace(tzinfo=UTC)
        return left == right
    return str(left) == str(right)


def _column_updates(updates: dict[str, Any]) -> dict[str, Any]:
    """Engine updates converted to column values."""
    columns = {}
    for key, value in updates.items():
        if key == "id":
            continue
        if key == "session_type_id":
            value = _as_uuid(value, "Session type")
        elif key in _DATETIME_COLUMNS and isinstance(value, str):
            parsed = parse_timestamp(value)
            if parsed is None:
                raise MissingPrerequisite(f"Invalid timestamp for {key}: {value}", [key])
            value = parsed
        columns[key] = value
    return columns


class TransitionService:
    """Applies events to bookings."""

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: EffectDispatcher | None = None,
        config: Settings | None = None,
        encryption: EncryptionService | None = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.config = config or default_settings
        self.encryption = encryption or get_encryption_service()

    # ==================== READS ====================

    async def get(self, booking_id: str | uuid.UUID) -> Booking:
        booking = await self.db.get(Booking, _as_uuid(booking_id))
        if not booking:
            raise NotFoundError("Booking", str(booking_id))
        return booking

    async def find_by(self, **lookup: str) -> Booking | None:
        """Find a booking by a provider identifier.

        Supported keys: payment_session_id, payment_intent_id,
        scheduling_event_uri, scheduling_invitee_uri.
        """
        for field, value in lookup.items():
            if not value:
                continue
            result = await self.db.execute(
                select(Booking)
                .where(getattr(Booking, field) == value)
                .order_by(Booking.created_at.desc())
                .limit(1)
            )
            booking = result.scalar_one_or_none()
            if booking:
                return booking
        return None

    async def history(self, booking_id: str | uuid.UUID) -> list[BookingTransition]:
        booking = await self.get(booking_id)
        result = await self.db.execute(
            select(BookingTransition)
            .where(BookingTransition.booking_id == booking.id)
            .order_by(BookingTransition.created_at)
        )
        return list(result.scalars().all())

    async def list_stale(self, cutoff: datetime, limit: int | None = None) -> list[Booking]:
        """Bookings parked in an intermediate state since before ``cutoff``."""
        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.current_state.in_([state.value for state in INTERMEDIATE_STATES]),
                Booking.last_transition < cutoff,
            )
            .order_by(Booking.last_transition)
            .limit(limit or self.config.reconciliation_batch_size)
        )
        return list(result.scalars().all())

    def decrypted_state_data(self, booking: Booking) -> dict[str, Any]:
        """State data with payment identifiers decrypted (for internal diagnostics)."""
        history = [
            {
                **entry,
                "data": self.encryption.decrypt_fields(entry.get("data") or {}, SENSITIVE_FIELDS),
            }
            for entry in booking.history
        ]
        return {**(booking.state_data or {}), "history": history}

    # ==================== WRITES ====================

    async def initialize(
        self,
        booking_id: str | None,
        builder_id: str,
        session_type_id: str,
        client_id: str | None = None,
        client_email: str | None = None,
    ) -> Booking:
        """Create a booking and select its session type.

        Replaying with the same ids returns the existing booking; the same id
        with different ids raises ``ConflictingState``.
        """
        booking_uuid = _as_uuid(booking_id) if booking_id else uuid.uuid4()
        existing = await self.db.get(Booking, booking_uuid)
        if existing is not None:
            return await self._initialize_existing(existing, builder_id, session_type_id, client_id)

        session_type = await self._load_session_type(session_type_id, builder_id)
        now = _utcnow()
        payload = {
            "booking_id": str(booking_uuid),
            "builder_id": builder_id,
            "session_type_id": str(session_type.id),
            "client_id": client_id,
            "amount": session_type.price,
            "currency": session_type.currency,
            "occurred_at": now,
        }
        result = transition(
            BookingState.IDLE,
            BookingEvent.SELECT_SESSION_TYPE,
            payload,
            BookingContext(booking_id=str(booking_uuid)),
        )

        booking = Booking(
            id=booking_uuid,
            builder_id=builder_id,
            session_type_id=session_type.id,
            client_email=client_email,
            current_state=BookingState.IDLE.value,
            state_data={"history": []},
        )
        self.db.add(booking)
        self._persist(booking, result, BookingEvent.SELECT_SESSION_TYPE, payload, "api", now)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent initialize for the same id
            await self.db.rollback()
            existing = await self.get(booking_uuid)
            return await self._initialize_existing(existing, builder_id, session_type_id, client_id)

        logger.info(
            f"Booking {booking.id} initialized for builder {builder_id} "
            f"(session type {session_type.id}, amount {booking.amount} {booking.currency})"
        )
        return booking

    async def _initialize_existing(
        self,
        booking: Booking,
        builder_id: str,
        session_type_id: str,
        client_id: str | None,
    ) -> Booking:
        if booking.state is BookingState.IDLE:
            # Reset flows start over with a fresh price snapshot
            session_type = await self._load_session_type(session_type_id, builder_id)
            return await self.apply(
                booking.id,
                BookingEvent.SELECT_SESSION_TYPE,
                {
                    "builder_id": builder_id,
                    "session_type_id": str(session_type.id),
                    "client_id": client_id,
                    "amount": session_type.price,
                    "currency": session_type.currency,
                },
            )
        requested = _as_uuid(session_type_id, "Session type")
        same_session_type = _same(booking.session_type_id, requested)
        if booking.builder_id != builder_id or not same_session_type:
            raise ConflictingState(
                f"Booking {booking.id} already exists for a different builder or session type"
            )
        logger.info(f"Booking {booking.id} already initialized; returning current state")
        return booking

    async def _load_session_type(self, session_type_id: str, builder_id: str) -> SessionType:
        session_type = await self.db.get(SessionType, _as_uuid(session_type_id, "Session type"))
        if not session_type or not session_type.is_active:
            raise NotFoundError("Session type", str(session_type_id))
        if session_type.builder_id != builder_id:
            raise MissingPrerequisite(
                "Session type does not belong to this builder", ["builder_id", "session_type_id"]
            )
        return session_type

    async def apply(
        self,
        booking_id: str | uuid.UUID,
        event: BookingEvent | str,
        data: dict[str, Any] | None = None,
        *,
        source: str = "api",
        max_attempts: int | None = None,
    ) -> Booking:
        """Apply one event and return the updated booking.

        Raises:
            IllegalTransition, MissingPrerequisite: engine rejected the event
            ConflictingState: replay of an applied event with different data
            ConcurrencyConflict: lost the version check ``max_attempts`` times
        """
        attempts = max_attempts or self.config.transition_max_attempts
        event = self._coerce_event(event)

        for attempt in range(1, attempts + 1):
            try:
                booking, applied = await self._apply_once(booking_id, event, data or {}, source)
            except StaleDataError:
                await self.db.rollback()
                logger.warning(
                    f"Concurrent update on booking {booking_id} while applying {event.value} "
                    f"(attempt {attempt}/{attempts})"
                )
                if attempt == attempts:
                    raise ConcurrencyConflict(str(booking_id))
                continue

            if applied:
                await self._dispatch(booking)
            return booking

        raise ConcurrencyConflict(str(booking_id))

    def _coerce_event(self, event: BookingEvent | str) -> BookingEvent:
        try:
            return BookingEvent(event)
        except ValueError:
            raise ValidationError(f"Unknown booking event: {event}")

    async def _apply_once(
        self,
        booking_id: str | uuid.UUID,
        event: BookingEvent,
        data: dict[str, Any],
        source: str,
    ) -> tuple[Booking, bool]:
        booking = await self.get(booking_id)
        now = _utcnow()
        payload = dict(data)
        payload.setdefault("occurred_at", now)

        try:
            result = transition(booking.state, event, payload, self._context(booking))
        except IllegalTransition:
            if await self._is_replay(booking, event, payload):
                logger.info(
                    f"Replay of {event.value} on booking {booking.id} ignored "
                    f"(state {booking.current_state})"
                )
                return booking, False
            logger.warning(
                f"Rejected {event.value} on booking {booking.id} in state {booking.current_state}"
            )
            raise

        if self._is_noop(booking, result):
            return booking, False

        self._persist(booking, result, event, payload, source, now)
        await self.db.commit()

        logger.info(
            f"Booking {booking.id}: {result.from_state.value} --{event.value}--> "
            f"{' -> '.join(state.value for state in result.path)}"
            + (f" effects={[effect.value for effect in result.effects]}" if result.effects else "")
        )
        return booking, True

    def _context(self, booking: Booking) -> BookingContext:
        return BookingContext(
            booking_id=str(booking.id),
            amount=booking.amount,
            currency=booking.currency,
            scheduling_event_uri=booking.scheduling_event_uri,
            start_time=booking.start_time,
            payment_session_id=booking.payment_session_id,
            payment_intent_id=booking.payment_intent_id,
        )

    def _is_noop(self, booking: Booking, result: TransitionResult) -> bool:
        """Self-loop with nothing new to record (e.g. a repeated reschedule)."""
        if result.state is not result.from_state or result.effects:
            return False
        return all(
            _same(getattr(booking, key), value)
            for key, value in _column_updates(result.updates).items()
            if key != "rescheduled_from"
        )

    async def _is_replay(
        self, booking: Booking, event: BookingEvent, payload: dict[str, Any]
    ) -> bool:
        """Whether ``event`` was already applied since the last reset.

        Raises ConflictingState when it was, but with different identifying data.
        """
        result = await self.db.execute(
            select(BookingTransition.event)
            .where(BookingTransition.booking_id == booking.id)
            .order_by(BookingTransition.created_at)
        )
        applied: list[str] = []
        for name in result.scalars().all():
            if name == BookingEvent.RESET.value:
                applied = []
            else:
                applied.append(name)
        if event.value not in applied:
            return False

        for field in REPLAY_IDENTITY_FIELDS.get(event, ()):
            incoming = payload.get(field)
            if incoming is None:
                continue
            stored = getattr(booking, _COLUMN_FOR_FIELD.get(field, field), None)
            if stored is not None and not _same(stored, incoming):
                logger.warning(
                    f"Conflicting replay of {event.value} on booking {booking.id}: {field} differs"
                )
                raise ConflictingState(
                    f"{event.value} was already applied to booking {booking.id} "
                    f"with a different {field}"
                )
        return True

    def _persist(
        self,
        booking: Booking,
        result: TransitionResult,
        event: BookingEvent,
        payload: dict[str, Any],
        source: str,
        now: datetime,
    ) -> None:
        # Effects keep the references of the flow they belong to, even across RESET
        references = {field: getattr(booking, field) for field in EFFECT_REFERENCE_FIELDS}
        for key, value in _column_updates(result.updates).items():
            setattr(booking, key, value)
        for field in EFFECT_REFERENCE_FIELDS:
            references[field] = getattr(booking, field) or references[field]

        booking.current_state = result.state.value
        booking.last_transition = now
        if event is BookingEvent.INITIATE_PAYMENT or result.state is BookingState.BOOKING_CONFIRMED:
            booking.last_error_code = None
            booking.last_error_message = None
            booking.last_error_at = None

        encoded = jsonable_encoder(payload)
        entry = {
            "event": event.value,
            "from": result.from_state.value,
            "to": result.state.value,
            "path": [state.value for state in result.path],
            "source": source,
            "at": now.isoformat(),
            "data": self.encryption.encrypt_fields(encoded, SENSITIVE_FIELDS),
        }
        # Reassign so the JSON column is flagged dirty
        booking.state_data = {**(booking.state_data or {}), "history": booking.history + [entry]}

        self.db.add(
            BookingTransition(
                booking_id=booking.id,
                from_state=result.from_state.value,
                to_state=result.state.value,
                event=event.value,
                source=source,
                payload=sanitize_for_logging(encoded),
                effects=[effect.value for effect in result.effects],
                created_at=now,
            )
        )
        effect_payload = self.encryption.encrypt_fields(
            {"event": event.value, "state": result.state.value, **references}, SENSITIVE_FIELDS
        )
        for effect in result.effects:
            self.db.add(
                BookingEffect(booking_id=booking.id, effect=effect.value, payload=effect_payload)
            )

        if result.state in RECOVERY_STATES:
            self._issue_recovery_token(booking, now)

    async def _dispatch(self, booking: Booking) -> None:
        if self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch(str(booking.id))
        except Exception as e:
            # State is committed; the reconciliation sweep re-dispatches pending effects
            logger.error(f"Effect dispatch failed for booking {booking.id}: {e}")

    async def record_error(self, booking_id: str | uuid.UUID, code: str, message: str) -> Booking:
        """Record a provider failure on the booking without changing its state."""
        booking = await self.get(booking_id)
        now = _utcnow()
        booking.last_error_code = code
        booking.last_error_message = message[:1000]
        booking.last_error_at = now
        self._issue_recovery_token(booking, now)
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConcurrencyConflict(str(booking_id))
        logger.warning(f"Booking {booking.id} recorded error {code}: {message}")
        return booking

    async def refund_unclaimed_payment(
        self,
        booking_id: str | uuid.UUID,
        payment_intent_id: str,
        payment_session_id: str | None = None,
    ) -> bool:
        """Queue a refund for a payment the booking can no longer accept.

        Covers checkouts completed after the booking was cancelled or reset,
        or after it moved on to another checkout session. The booking state
        is left alone.

        Returns:
            False when a refund for this payment is already queued
        """
        booking = await self.get(booking_id)
        result = await self.db.execute(
            select(BookingEffect).where(
                BookingEffect.booking_id == booking.id,
                BookingEffect.effect == Effect.REFUND_PAYMENT.value,
            )
        )
        for row in result.scalars().all():
            recorded = self.encryption.decrypt_fields(row.payload or {}, SENSITIVE_FIELDS)
            if recorded.get("payment_intent_id") == payment_intent_id:
                logger.info(
                    f"Refund for payment {mask_identifier(payment_intent_id)} on booking "
                    f"{booking.id} already queued"
                )
                return False

        payload = {
            "event": BookingEvent.PAYMENT_SUCCEEDED.value,
            "state": booking.current_state,
            "payment_intent_id": payment_intent_id,
            "payment_session_id": payment_session_id,
            "cancellation_reason": "Payment received for a closed checkout",
        }
        self.db.add(
            BookingEffect(
                booking_id=booking.id,
                effect=Effect.REFUND_PAYMENT.value,
                payload=self.encryption.encrypt_fields(payload, SENSITIVE_FIELDS),
            )
        )
        await self.db.commit()
        logger.warning(
            f"Payment {mask_identifier(payment_intent_id)} arrived for booking {booking.id} "
            f"in state {booking.current_state}; refund queued"
        )
        await self._dispatch(booking)
        return True

    # ==================== RECOVERY ====================

    def _issue_recovery_token(self, booking: Booking, now: datetime) -> None:
        token, expires_at = create_recovery_token(
            str(booking.id),
            booking.current_state,
            issued_at=now,
            expires_delta=timedelta(hours=self.config.recovery_token_expire_hours),
        )
        booking.recovery_token = token
        booking.recovery_token_expires_at = expires_at

    async def recover(self, token: str) -> Booking:
        """Resolve a recovery token to its booking. Never changes state."""
        claims = verify_recovery_token(token)
        booking = await self.get(claims["sub"])
        if booking.recovery_token != token:
            raise ValidationError("Recovery token has been superseded")
        return booking
