"""
Tests for the client-side booking flow coordinator.
Covers: full paid flow against the API, redirect resume, error mapping,
non-retryable reset, query parameter round trip.
"""
import httpx
import pytest

from app.client.flow import BookingFlowClient, ClientBookingState, ClientFlowError
from app.domain.booking_state import BookingEvent, BookingState

from tests.helpers import BUILDER_ID, EVENT_URI, INVITEE_URI


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")


class TestFlowAgainstApi:
    async def test_paid_flow_through_redirect(self, client, paid_session_type):
        flow = BookingFlowClient("http://test", client=client)

        state = await flow.initialize(BUILDER_ID, str(paid_session_type.id))
        assert state.step is BookingState.SESSION_TYPE_SELECTED
        assert state.booking_id is not None

        await flow.dispatch(BookingEvent.INITIATE_SCHEDULING)
        await flow.dispatch(
            BookingEvent.SCHEDULE_EVENT,
            {"scheduling_event_uri": EVENT_URI, "scheduling_invitee_uri": INVITEE_URI},
        )
        assert flow.state.step is BookingState.CALENDLY_EVENT_SCHEDULED

        url = await flow.start_checkout()
        assert url == "https://checkout.stripe.com/c/pay/cs_test_abc123"
        assert flow.state.step is BookingState.PAYMENT_PENDING
        assert flow.state.awaiting_payment

        # Back from the hosted checkout page with only the query string
        returned = ClientBookingState.from_query_params(
            {
                "bookingId": flow.state.booking_id,
                "step": "PAYMENT_PENDING",
                "session_id": "cs_test_abc123",
            }
        )
        resumed = BookingFlowClient("http://test", state=returned, client=client)
        state = await resumed.resume()

        assert state.step is BookingState.BOOKING_CONFIRMED
        assert state.checkout_url is None
        assert state.error_code is None

    async def test_stale_local_step_is_overwritten(self, client, scheduled_booking):
        hint = ClientBookingState(
            step=BookingState.PAYMENT_FAILED, booking_id=str(scheduled_booking.id)
        )
        flow = BookingFlowClient("http://test", state=hint, client=client)

        state = await flow.resume()

        assert state.step is BookingState.CALENDLY_EVENT_SCHEDULED
        assert state.scheduling_event_uri == EVENT_URI
        assert not state.retryable

    async def test_illegal_event_resets_to_idle(self, client, scheduled_booking):
        flow = BookingFlowClient("http://test", client=client)
        flow.state.booking_id = str(scheduled_booking.id)
        await flow.refresh()

        with pytest.raises(ClientFlowError) as exc_info:
            await flow.dispatch(BookingEvent.INITIATE_SCHEDULING)

        assert exc_info.value.status_code == 409
        assert flow.state.step is BookingState.IDLE
        assert flow.state.booking_id is None
        assert flow.state.builder_id == BUILDER_ID
        assert flow.state.session_type_id == str(scheduled_booking.session_type_id)
        assert flow.state.error_code == "illegal_transition"

    async def test_provider_event_is_forbidden(self, client, pending_booking):
        flow = BookingFlowClient("http://test", client=client)
        flow.state.booking_id = str(pending_booking.id)
        await flow.refresh()

        with pytest.raises(ClientFlowError) as exc_info:
            await flow.dispatch(BookingEvent.PAYMENT_SUCCEEDED)

        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "event_not_allowed"
        assert not exc_info.value.retryable


class TestErrorMapping:
    def _in_progress(self) -> ClientBookingState:
        return ClientBookingState(
            step=BookingState.PAYMENT_PENDING,
            booking_id="b-1",
            builder_id=BUILDER_ID,
            session_type_id="st-1",
            payment_session_id="cs_1",
        )

    async def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        flow = BookingFlowClient(
            "http://test", state=self._in_progress(), client=mock_client(handler)
        )

        with pytest.raises(ClientFlowError) as exc_info:
            await flow.dispatch(BookingEvent.REQUEST_CANCELLATION)

        assert exc_info.value.retryable
        assert exc_info.value.code == "network_error"
        assert flow.state.step is BookingState.PAYMENT_PENDING
        assert flow.state.booking_id == "b-1"

    async def test_server_error_is_retryable(self):
        flow = BookingFlowClient(
            "http://test",
            state=self._in_progress(),
            client=mock_client(lambda request: httpx.Response(503, text="unavailable")),
        )

        with pytest.raises(ClientFlowError) as exc_info:
            await flow.check_payment()

        assert exc_info.value.retryable
        assert exc_info.value.message == "Request rejected (503)"
        assert flow.state.payment_session_id == "cs_1"

    async def test_server_retryable_flag_wins(self):
        body = {
            "detail": "Version conflict",
            "message": "Booking was modified concurrently",
            "code": "concurrency_conflict",
            "retryable": True,
        }
        flow = BookingFlowClient(
            "http://test",
            state=self._in_progress(),
            client=mock_client(lambda request: httpx.Response(409, json=body)),
        )

        with pytest.raises(ClientFlowError) as exc_info:
            await flow.refresh()

        assert exc_info.value.retryable
        assert exc_info.value.message == "Booking was modified concurrently"
        assert flow.state.booking_id == "b-1"

    async def test_validation_errors_are_not_retryable(self):
        body = {
            "detail": [{"loc": ["body", "event"], "msg": "Input should be ..."}],
            "message": "Invalid request",
            "code": "validation_error",
            "retryable": False,
        }
        flow = BookingFlowClient(
            "http://test",
            state=self._in_progress(),
            client=mock_client(lambda request: httpx.Response(400, json=body)),
        )

        with pytest.raises(ClientFlowError) as exc_info:
            await flow.dispatch("TELEPORT")

        assert not exc_info.value.retryable
        assert exc_info.value.message == "Invalid request"
        assert exc_info.value.code == "validation_error"
        assert flow.state.step is BookingState.IDLE
        assert flow.state.session_type_id == "st-1"

    async def test_no_booking_in_progress(self):
        client = mock_client(lambda request: httpx.Response(200))
        flow = BookingFlowClient("http://test", client=client)
        with pytest.raises(ClientFlowError) as exc_info:
            await flow.refresh()
        assert exc_info.value.code == "missing_booking"


class TestQueryParams:
    def test_round_trip(self):
        state = ClientBookingState(
            step=BookingState.PAYMENT_PENDING, booking_id="b-1", payment_session_id="cs_1"
        )
        expected = "bookingId=b-1&step=PAYMENT_PENDING&paymentSessionId=cs_1"
        assert state.to_query_params() == expected

    def test_unknown_step_falls_back_to_idle(self):
        state = ClientBookingState.from_query_params({"bookingId": "b-1", "step": "WHATEVER"})
        assert state.step is BookingState.IDLE
        assert state.booking_id == "b-1"
