"""
Tests for the Transition API.
Covers: initialize and its replays, idempotent replays, conflicting replays,
optimistic concurrency, the append-only log, recovery tokens, error
recording, timestamp coercion, state data encryption.
"""
import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    ConcurrencyConflict,
    ConflictingState,
    IllegalTransition,
    MissingPrerequisite,
    NotFoundError,
    ValidationError,
)
from app.core.immutability import ImmutabilityViolationError
from app.core.encryption import is_encrypted
from app.domain.booking_state import RESET_CLEARED_FIELDS, BookingEvent, BookingState
from app.gateways.base import RefundResult
from app.models.booking import Booking, BookingEffect, BookingTransition
from app.services.transition_service import TransitionService

from tests.helpers import BUILDER_ID, EVENT_URI, INVITEE_URI

SCHEDULED = {
    "scheduling_event_uri": EVENT_URI,
    "scheduling_invitee_uri": INVITEE_URI,
    "start_time": "2026-11-02T15:00:00Z",
}


async def _events(db, booking_id) -> list[str]:
    result = await db.execute(
        select(BookingTransition.event)
        .where(BookingTransition.booking_id == uuid.UUID(str(booking_id)))
        .order_by(BookingTransition.created_at)
    )
    return list(result.scalars().all())


class TestInitialize:
    async def test_creates_booking_with_price_snapshot(
        self, transitions, paid_session_type, booking_id
    ):
        booking = await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))

        assert str(booking.id) == booking_id
        assert booking.state is BookingState.SESSION_TYPE_SELECTED
        assert booking.amount == 5000
        assert booking.currency == "usd"
        assert booking.version == 1
        assert booking.recovery_token
        assert booking.history[0]["event"] == "SELECT_SESSION_TYPE"

    async def test_generates_id_when_missing(self, transitions, free_session_type):
        booking = await transitions.initialize(None, BUILDER_ID, str(free_session_type.id))
        assert isinstance(booking.id, uuid.UUID)

    async def test_replay_returns_existing_booking(
        self, transitions, paid_session_type, booking_id, db
    ):
        first = await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))
        second = await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))

        assert second.id == first.id
        assert second.version == first.version
        assert await _events(db, booking_id) == ["SELECT_SESSION_TYPE"]

    async def test_replay_with_other_session_type_conflicts(
        self, transitions, paid_session_type, free_session_type, booking_id
    ):
        await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))
        with pytest.raises(ConflictingState):
            await transitions.initialize(booking_id, BUILDER_ID, str(free_session_type.id))

    async def test_unknown_session_type(self, transitions, booking_id):
        with pytest.raises(NotFoundError):
            await transitions.initialize(booking_id, BUILDER_ID, str(uuid.uuid4()))

    async def test_session_type_of_other_builder(self, transitions, paid_session_type, booking_id):
        with pytest.raises(MissingPrerequisite):
            await transitions.initialize(booking_id, "someone-else", str(paid_session_type.id))


class TestApply:
    async def test_apply_persists_state_log_and_version(self, transitions, scheduled_booking, db):
        booking = scheduled_booking

        assert booking.state is BookingState.CALENDLY_EVENT_SCHEDULED
        assert booking.scheduling_event_uri == EVENT_URI
        assert booking.start_time.replace(tzinfo=UTC) == datetime(2026, 11, 2, 15, tzinfo=UTC)
        assert booking.version == 3
        assert await _events(db, booking.id) == [
            "SELECT_SESSION_TYPE",
            "INITIATE_SCHEDULING",
            "SCHEDULE_EVENT",
        ]

    async def test_illegal_event_raises(self, transitions, scheduled_booking):
        with pytest.raises(IllegalTransition) as exc_info:
            await transitions.apply(scheduled_booking.id, BookingEvent.PAYMENT_SUCCEEDED)
        assert exc_info.value.to_content()["code"] == "illegal_transition"
        assert exc_info.value.to_content()["retryable"] is False

    async def test_unknown_event_name(self, transitions, scheduled_booking):
        with pytest.raises(ValidationError):
            await transitions.apply(scheduled_booking.id, "TELEPORT")

    async def test_unknown_booking(self, transitions):
        with pytest.raises(NotFoundError):
            await transitions.apply(str(uuid.uuid4()), BookingEvent.INITIATE_SCHEDULING)

    async def test_invalid_timestamp_rejected(self, transitions, paid_session_type, booking_id):
        await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))
        await transitions.apply(booking_id, BookingEvent.INITIATE_SCHEDULING)
        with pytest.raises(MissingPrerequisite):
            await transitions.apply(
                booking_id, BookingEvent.SCHEDULE_EVENT, {**SCHEDULED, "start_time": "next tuesday"}
            )

    async def test_free_booking_confirms_and_queues_email(
        self, transitions, free_session_type, booking_id, notifier, db
    ):
        await transitions.initialize(booking_id, BUILDER_ID, str(free_session_type.id))
        await transitions.apply(booking_id, BookingEvent.INITIATE_SCHEDULING)
        booking = await transitions.apply(booking_id, BookingEvent.SCHEDULE_EVENT, SCHEDULED)

        assert booking.state is BookingState.BOOKING_CONFIRMED
        notifier.notify_booking_confirmed.assert_awaited_once()
        effects = (await db.execute(select(BookingEffect))).scalars().all()
        assert [(e.effect, e.status) for e in effects] == [("SEND_BOOKING_CONFIRMATION", "done")]


class TestIdempotency:
    async def test_replay_is_noop(self, transitions, scheduled_booking, db):
        version = scheduled_booking.version
        booking = await transitions.apply(
            scheduled_booking.id, BookingEvent.SCHEDULE_EVENT, SCHEDULED
        )

        assert booking.state is BookingState.CALENDLY_EVENT_SCHEDULED
        assert booking.version == version
        assert (await _events(db, booking.id)).count("SCHEDULE_EVENT") == 1

    async def test_replay_with_different_identity_conflicts(self, transitions, scheduled_booking):
        with pytest.raises(ConflictingState) as exc_info:
            await transitions.apply(
                scheduled_booking.id,
                BookingEvent.SCHEDULE_EVENT,
                {**SCHEDULED, "scheduling_event_uri": f"{EVENT_URI}-other"},
            )
        assert exc_info.value.code == "conflicting_state"

    async def test_events_before_reset_are_not_replays(
        self, transitions, scheduled_booking, paid_session_type
    ):
        await transitions.apply(scheduled_booking.id, BookingEvent.RESET)
        booking = await transitions.initialize(
            str(scheduled_booking.id), BUILDER_ID, str(paid_session_type.id)
        )
        assert booking.state is BookingState.SESSION_TYPE_SELECTED
        with pytest.raises(IllegalTransition):
            await transitions.apply(booking.id, BookingEvent.SCHEDULE_EVENT, SCHEDULED)

    async def test_repeated_reschedule_is_noop(self, transitions, confirmed_booking, db):
        data = {"scheduling_event_uri": f"{EVENT_URI}-b", "start_time": "2026-11-05T09:00:00Z"}
        first = await transitions.apply(confirmed_booking.id, BookingEvent.RESCHEDULE_EVENT, data)
        version = first.version
        second = await transitions.apply(confirmed_booking.id, BookingEvent.RESCHEDULE_EVENT, data)

        assert second.version == version
        assert (await _events(db, first.id)).count("RESCHEDULE_EVENT") == 1
        assert second.rescheduled_from.replace(tzinfo=UTC) == datetime(2026, 11, 2, 15, tzinfo=UTC)


class TestReset:
    async def test_reset_clears_provider_linkage(self, transitions, confirmed_booking):
        await transitions.apply(
            confirmed_booking.id, BookingEvent.REQUEST_CANCELLATION, {"reason": "Conflict"}
        )
        booking = await transitions.apply(confirmed_booking.id, BookingEvent.RESET)

        assert booking.state is BookingState.IDLE
        for name in RESET_CLEARED_FIELDS:
            assert getattr(booking, name) is None, name
        # Late provider events of the old flow no longer resolve to this booking
        assert await transitions.find_by(scheduling_event_uri=EVENT_URI) is None
        assert await transitions.find_by(payment_intent_id="pi_test_789") is None

    async def test_second_paid_flow_is_refunded_on_cancel(
        self, transitions, confirmed_booking, paid_session_type, payment_gateway
    ):
        payment_gateway.process_refund = AsyncMock(
            side_effect=[
                RefundResult(success=True, refund_id="re_first"),
                RefundResult(success=True, refund_id="re_second"),
            ]
        )
        booking_id = confirmed_booking.id
        await transitions.apply(booking_id, BookingEvent.RESET)
        await transitions.initialize(str(booking_id), BUILDER_ID, str(paid_session_type.id))
        await transitions.apply(booking_id, BookingEvent.INITIATE_SCHEDULING)
        await transitions.apply(
            booking_id,
            BookingEvent.SCHEDULE_EVENT,
            {**SCHEDULED, "scheduling_event_uri": f"{EVENT_URI}-second"},
        )
        await transitions.apply(booking_id, BookingEvent.INITIATE_PAYMENT)
        await transitions.apply(
            booking_id, BookingEvent.PAYMENT_PENDING, {"payment_session_id": "cs_second"}
        )
        await transitions.apply(
            booking_id, BookingEvent.PAYMENT_PROCESSING, {"payment_intent_id": "pi_second"}
        )
        await transitions.apply(
            booking_id,
            BookingEvent.PAYMENT_SUCCEEDED,
            {"payment_session_id": "cs_second", "payment_intent_id": "pi_second"},
        )

        booking = await transitions.apply(booking_id, BookingEvent.REQUEST_CANCELLATION)

        assert payment_gateway.process_refund.await_count == 2
        second = payment_gateway.process_refund.await_args
        assert second.args == ("pi_second",)
        assert second.kwargs["idempotency_key"] == f"refund-{booking_id}-pi_second"
        assert booking.refund_id == "re_second"


class TestConcurrency:
    async def test_stale_writer_loses_and_sees_winner(
        self, session_factory, transitions, paid_session_type, booking_id, test_settings
    ):
        await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))
        await transitions.apply(booking_id, BookingEvent.INITIATE_SCHEDULING)

        async with session_factory() as session_a, session_factory() as session_b:
            writer_a = TransitionService(session_a, config=test_settings)
            writer_b = TransitionService(session_b, config=test_settings)
            # B reads before A writes
            await writer_b.get(booking_id)

            await writer_a.apply(booking_id, BookingEvent.SCHEDULE_EVENT, SCHEDULED)

            with pytest.raises(ConcurrencyConflict) as exc_info:
                await writer_b.apply(
                    booking_id, BookingEvent.SCHEDULE_EVENT, SCHEDULED, max_attempts=1
                )
            assert exc_info.value.retryable is True

            booking = await writer_b.get(booking_id)
            assert booking.state is BookingState.CALENDLY_EVENT_SCHEDULED

            replay = await writer_b.apply(booking_id, BookingEvent.SCHEDULE_EVENT, SCHEDULED)
            assert replay.version == booking.version

        async with session_factory() as session:
            assert (await _events(session, booking_id)).count("SCHEDULE_EVENT") == 1

    async def test_stale_writer_retries_into_replay(
        self, session_factory, transitions, paid_session_type, booking_id, test_settings
    ):
        await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))
        await transitions.apply(booking_id, BookingEvent.INITIATE_SCHEDULING)

        async with session_factory() as session_a, session_factory() as session_b:
            writer_a = TransitionService(session_a, config=test_settings)
            writer_b = TransitionService(session_b, config=test_settings)
            await writer_b.get(booking_id)
            await writer_a.apply(booking_id, BookingEvent.SCHEDULE_EVENT, SCHEDULED)

            booking = await writer_b.apply(booking_id, BookingEvent.SCHEDULE_EVENT, SCHEDULED)
            assert booking.state is BookingState.CALENDLY_EVENT_SCHEDULED

    async def test_stale_writer_with_other_event_is_rejected(
        self, session_factory, transitions, scheduled_booking, test_settings
    ):
        booking_id = scheduled_booking.id
        async with session_factory() as session_a, session_factory() as session_b:
            writer_a = TransitionService(session_a, config=test_settings)
            writer_b = TransitionService(session_b, config=test_settings)
            await writer_b.get(booking_id)
            await writer_a.apply(booking_id, BookingEvent.REQUEST_CANCELLATION, {"reason": "x"})

            with pytest.raises(IllegalTransition):
                await writer_b.apply(booking_id, BookingEvent.INITIATE_PAYMENT)


class TestTransitionLog:
    async def test_log_rows_cannot_be_updated(self, transitions, scheduled_booking, db):
        row = (await transitions.history(scheduled_booking.id))[0]
        row.source = "tampered"
        with pytest.raises(ImmutabilityViolationError):
            await db.commit()
        await db.rollback()

    async def test_log_rows_cannot_be_deleted(self, transitions, scheduled_booking, db):
        row = (await transitions.history(scheduled_booking.id))[0]
        await db.delete(row)
        with pytest.raises(ImmutabilityViolationError):
            await db.commit()
        await db.rollback()

    async def test_payment_ids_masked_in_log_and_encrypted_in_state_data(
        self, transitions, pending_booking
    ):
        rows = await transitions.history(pending_booking.id)
        pending = next(row for row in rows if row.event == "PAYMENT_PENDING")
        assert pending.payload["payment_session_id"] == "cs_t****c123"

        entry = pending_booking.history[-1]
        assert is_encrypted(entry["data"]["payment_session_id"])
        decrypted = transitions.decrypted_state_data(pending_booking)
        assert decrypted["history"][-1]["data"]["payment_session_id"] == "cs_test_abc123"


class TestErrorsAndRecovery:
    async def test_record_error_keeps_state(self, transitions, pending_booking):
        version = pending_booking.version
        booking = await transitions.record_error(
            pending_booking.id, "card_declined", "Your card was declined."
        )
        assert booking.state is BookingState.PAYMENT_PENDING
        assert booking.last_error_code == "card_declined"
        assert booking.version == version + 1

    async def test_initiate_payment_clears_last_error(self, transitions, pending_booking):
        await transitions.apply(
            pending_booking.id,
            BookingEvent.PAYMENT_FAILED,
            {"error_code": "checkout_expired", "error_message": "Expired"},
        )
        booking = await transitions.apply(pending_booking.id, BookingEvent.INITIATE_PAYMENT)
        assert booking.state is BookingState.PAYMENT_REQUIRED
        assert booking.last_error_code is None

    async def test_recover_resolves_current_token(self, transitions, pending_booking):
        booking = await transitions.recover(pending_booking.recovery_token)
        assert booking.id == pending_booking.id
        assert booking.state is BookingState.PAYMENT_PENDING

    async def test_recover_rejects_garbage(self, transitions):
        with pytest.raises(ValidationError):
            await transitions.recover("not-a-token")

    async def test_list_stale_uses_last_transition(self, transitions, scheduled_booking):
        future = datetime(2100, 1, 1, tzinfo=UTC)
        past = datetime(2000, 1, 1, tzinfo=UTC)
        assert [b.id for b in await transitions.list_stale(future)] == [scheduled_booking.id]
        assert await transitions.list_stale(past) == []

    async def test_list_stale_skips_confirmed(self, transitions, confirmed_booking):
        future = datetime(2100, 1, 1, tzinfo=UTC)
        assert await transitions.list_stale(future) == []

    async def test_find_by_provider_identifier(self, transitions, pending_booking):
        booking = await transitions.find_by(payment_session_id="cs_test_abc123")
        assert booking.id == pending_booking.id
        assert await transitions.find_by(payment_session_id="cs_unknown") is None


async def test_booking_row_is_single_source_of_truth(transitions, scheduled_booking, db):
    result = await db.execute(select(Booking).where(Booking.id == scheduled_booking.id))
    assert result.scalar_one().current_state == BookingState.CALENDLY_EVENT_SCHEDULED.value
