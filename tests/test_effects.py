"""
Tests for effect execution.
Covers: refunds and outbound cancellation on cancel, refund lookups through
the checkout session, notification retries, permanent failure.
"""
import uuid
from unittest.mock import AsyncMock

from sqlalchemy import select

from app.domain.booking_state import BookingEvent, BookingState
from app.gateways.base import CancellationResult, CheckoutSessionResult, RefundResult
from app.models.booking import BookingEffect
from app.services.effect_service import EFFECT_DONE, EFFECT_FAILED, EFFECT_PENDING

from tests.helpers import BUILDER_ID, EVENT_URI, INVITEE_URI


async def _effects(db, booking_id) -> dict[str, BookingEffect]:
    result = await db.execute(select(BookingEffect).where(BookingEffect.booking_id == booking_id))
    return {row.effect: row for row in result.scalars().all()}


class TestCancellationEffects:
    async def test_cancel_paid_booking_refunds_and_cancels_event(
        self, transitions, confirmed_booking, payment_gateway, scheduling_gateway, db
    ):
        booking = await transitions.apply(
            confirmed_booking.id, BookingEvent.REQUEST_CANCELLATION, {"reason": "Conflict"}
        )

        assert booking.state is BookingState.CANCELLATION_REQUESTED
        assert booking.refund_id == "re_test_001"
        payment_gateway.process_refund.assert_awaited_once_with(
            "pi_test_789",
            amount=None,
            reason="Conflict",
            idempotency_key=f"refund-{booking.id}-pi_test_789",
        )
        scheduling_gateway.cancel_event.assert_awaited_once_with(EVENT_URI, "Conflict")
        effects = await _effects(db, booking.id)
        assert effects["REFUND_PAYMENT"].status == EFFECT_DONE
        assert effects["CANCEL_SCHEDULED_EVENT"].status == EFFECT_DONE

    async def test_cancel_before_payment_does_not_refund(
        self, transitions, scheduled_booking, payment_gateway, scheduling_gateway
    ):
        await transitions.apply(scheduled_booking.id, BookingEvent.REQUEST_CANCELLATION)

        payment_gateway.process_refund.assert_not_awaited()
        scheduling_gateway.cancel_event.assert_awaited_once()

    async def test_cancel_before_scheduling_finishes_immediately(
        self, transitions, paid_session_type, booking_id, scheduling_gateway, notifier
    ):
        await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))
        booking = await transitions.apply(booking_id, BookingEvent.REQUEST_CANCELLATION)

        assert booking.state is BookingState.CANCELLED
        assert booking.cancelled_at is not None
        scheduling_gateway.cancel_event.assert_not_awaited()
        notifier.notify_booking_cancelled.assert_awaited_once()

    async def test_refund_resolves_intent_from_checkout_session(
        self, transitions, pending_booking, payment_gateway, db
    ):
        # Succeeded without an intent id on the event
        await transitions.apply(pending_booking.id, BookingEvent.PAYMENT_PROCESSING)
        await transitions.apply(
            pending_booking.id,
            BookingEvent.PAYMENT_SUCCEEDED,
            {"payment_session_id": "cs_test_abc123"},
        )

        booking = await transitions.apply(pending_booking.id, BookingEvent.RESET)

        payment_gateway.retrieve_checkout_session.assert_awaited_once_with("cs_test_abc123")
        assert payment_gateway.process_refund.await_args.args == ("pi_test_789",)
        assert (await _effects(db, booking.id))["REFUND_PAYMENT"].status == EFFECT_DONE
        # The reset flow keeps no link to the refunded payment
        assert booking.payment_intent_id is None
        assert booking.refund_id is None

    async def test_refund_is_not_repeated(
        self, transitions, confirmed_booking, executor, payment_gateway
    ):
        await transitions.apply(confirmed_booking.id, BookingEvent.REQUEST_CANCELLATION)
        await executor.run_pending(confirmed_booking.id)
        payment_gateway.process_refund.assert_awaited_once()

    async def test_pending_cancel_uses_recorded_event_after_reset(
        self, transitions, scheduled_booking, scheduling_gateway, db
    ):
        scheduling_gateway.cancel_event = AsyncMock(
            side_effect=[
                CancellationResult(success=False, error_message="Calendly returned 500"),
                CancellationResult(success=True),
            ]
        )
        await transitions.apply(
            scheduled_booking.id, BookingEvent.REQUEST_CANCELLATION, {"reason": "Conflict"}
        )
        booking = await transitions.apply(scheduled_booking.id, BookingEvent.RESET)
        # The reset dispatch retries the pending cancellation
        assert booking.scheduling_event_uri is None
        assert scheduling_gateway.cancel_event.await_count == 2
        assert scheduling_gateway.cancel_event.await_args.args == (EVENT_URI, "Conflict")
        row = (await _effects(db, booking.id))["CANCEL_SCHEDULED_EVENT"]
        assert row.status == EFFECT_DONE


class TestFailures:
    async def test_failed_notification_stays_pending_until_retried(
        self, transitions, free_session_type, booking_id, notifier, executor, db
    ):
        notifier.notify_booking_confirmed = AsyncMock(side_effect=[False, True])
        await transitions.initialize(booking_id, BUILDER_ID, str(free_session_type.id))
        await transitions.apply(booking_id, BookingEvent.INITIATE_SCHEDULING)
        booking = await transitions.apply(
            booking_id,
            BookingEvent.SCHEDULE_EVENT,
            {"scheduling_event_uri": EVENT_URI, "scheduling_invitee_uri": INVITEE_URI},
        )

        # State is committed regardless of the email outcome
        assert booking.state is BookingState.BOOKING_CONFIRMED
        row = (await _effects(db, booking.id))["SEND_BOOKING_CONFIRMATION"]
        assert row.status == EFFECT_PENDING
        assert row.attempts == 1
        assert "sendgrid" in row.last_error

        summary = await executor.run_pending(booking.id)
        assert summary[EFFECT_DONE] == 1
        assert row.status == EFFECT_DONE
        assert row.attempts == 2

    async def test_repeated_provider_failure_marks_effect_failed(
        self, transitions, scheduled_booking, scheduling_gateway, executor, test_settings, db
    ):
        scheduling_gateway.cancel_event = AsyncMock(
            return_value=CancellationResult(success=False, error_message="Calendly returned 500")
        )
        booking = await transitions.apply(scheduled_booking.id, BookingEvent.REQUEST_CANCELLATION)

        for _ in range(test_settings.effect_max_attempts - 1):
            await executor.run_pending(booking.id)

        row = (await _effects(db, booking.id))["CANCEL_SCHEDULED_EVENT"]
        assert row.status == EFFECT_FAILED
        assert row.attempts == test_settings.effect_max_attempts
        assert booking.state is BookingState.CANCELLATION_REQUESTED

    async def test_refund_failure_keeps_effect_pending(
        self, transitions, confirmed_booking, payment_gateway, db
    ):
        payment_gateway.process_refund = AsyncMock(
            return_value=RefundResult(success=False, error_message="charge_already_refunded")
        )
        booking = await transitions.apply(confirmed_booking.id, BookingEvent.REQUEST_CANCELLATION)

        row = (await _effects(db, booking.id))["REFUND_PAYMENT"]
        assert row.status == EFFECT_PENDING
        assert "charge_already_refunded" in row.last_error
        assert booking.refund_id is None

    async def test_no_payment_to_refund(self, transitions, pending_booking, payment_gateway, db):
        payment_gateway.retrieve_checkout_session = AsyncMock(
            return_value=CheckoutSessionResult(success=True, session_id="cs_test_abc123")
        )
        await transitions.apply(pending_booking.id, BookingEvent.PAYMENT_PROCESSING)
        await transitions.apply(
            pending_booking.id,
            BookingEvent.PAYMENT_SUCCEEDED,
            {"payment_session_id": "cs_test_abc123"},
        )
        await transitions.apply(pending_booking.id, BookingEvent.RESET)

        row = (await _effects(db, pending_booking.id))["REFUND_PAYMENT"]
        assert row.status == EFFECT_PENDING
        assert "no payment to refund" in row.last_error
        payment_gateway.process_refund.assert_not_awaited()


async def test_unknown_booking_runs_nothing(executor):
    summary = await executor.run_pending(uuid.uuid4())
    assert summary == {EFFECT_DONE: 0, EFFECT_FAILED: 0, EFFECT_PENDING: 0}
