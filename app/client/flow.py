"""Client-side booking flow coordinator.

``ClientBookingState`` is a presentation cache of the server's booking. It is
rebuilt from redirect query parameters and replaced wholesale by every server
response; it never decides anything on its own.
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any
from urllib.parse import urlencode

import httpx

from app.domain.booking_state import PAYMENT_IN_FLIGHT_STATES, BookingEvent, BookingState

logger = logging.getLogger(__name__)


class ClientFlowError(Exception):
    """Error surfaced to the UI layer."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.status_code = status_code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ClientFlowError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        detail = body.get("message") or body.get("detail")
        if not isinstance(detail, str):
            # FastAPI request validation errors carry a list
            detail = f"Request rejected ({response.status_code})"
        retryable = body.get("retryable")
        if retryable is None:
            retryable = response.status_code >= 500 or response.status_code == 429
        return cls(detail, body.get("code"), bool(retryable), response.status_code)


@dataclass
class ClientBookingState:
    step: BookingState = BookingState.IDLE
    booking_id: str | None = None
    builder_id: str | None = None
    session_type_id: str | None = None
    payment_session_id: str | None = None
    checkout_url: str | None = None
    scheduling_event_uri: str | None = None
    scheduling_invitee_uri: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    recovery_token: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False

    @classmethod
    def from_query_params(cls, params: Mapping[str, str]) -> "ClientBookingState":
        """Rebuild the mirror after a redirect back from a provider page."""
        try:
            step = BookingState(params.get("step") or BookingState.IDLE.value)
        except ValueError:
            step = BookingState.IDLE
        return cls(
            step=step,
            booking_id=params.get("bookingId"),
            builder_id=params.get("builderId"),
            session_type_id=params.get("sessionTypeId"),
            payment_session_id=params.get("paymentSessionId") or params.get("session_id"),
        )

    def to_query_params(self) -> str:
        params = {
            "bookingId": self.booking_id,
            "step": self.step.value,
            "sessionTypeId": self.session_type_id,
            "builderId": self.builder_id,
            "paymentSessionId": self.payment_session_id,
        }
        return urlencode({key: value for key, value in params.items() if value})

    @property
    def awaiting_payment(self) -> bool:
        return self.step in PAYMENT_IN_FLIGHT_STATES

    def replace_from_server(self, body: Mapping[str, Any]) -> None:
        """Overwrite the mirror with a server booking snapshot."""
        self.step = BookingState(body["state"])
        self.booking_id = body.get("bookingId") or self.booking_id
        self.builder_id = body.get("builderId") or self.builder_id
        self.session_type_id = body.get("sessionTypeId") or self.session_type_id
        self.payment_session_id = body.get("paymentSessionId")
        self.scheduling_event_uri = body.get("schedulingEventUri")
        self.scheduling_invitee_uri = body.get("schedulingInviteeUri")
        self.start_time = body.get("startTime")
        self.end_time = body.get("endTime")
        self.recovery_token = body.get("recoveryToken")
        last_error = body.get("lastError") or {}
        self.error_code = last_error.get("code")
        self.error_message = last_error.get("message")
        self.retryable = self.step is BookingState.PAYMENT_FAILED
        if self.step not in PAYMENT_IN_FLIGHT_STATES:
            self.checkout_url = None

    def fail(self, error: ClientFlowError) -> None:
        """Record an error; non-retryable ones restart the flow from IDLE."""
        self.error_code = error.code
        self.error_message = error.message
        self.retryable = error.retryable
        if error.retryable:
            return
        keep = {"builder_id": self.builder_id, "session_type_id": self.session_type_id}
        for field in fields(self):
            if field.name not in ("error_code", "error_message", "retryable"):
                setattr(self, field.name, field.default)
        self.builder_id = keep["builder_id"]
        self.session_type_id = keep["session_type_id"]


class BookingFlowClient:
    """Drives one booking flow against the booking API."""

    def __init__(
        self,
        base_url: str,
        state: ClientBookingState | None = None,
        client: httpx.AsyncClient | None = None,
        api_prefix: str = "/api/v1",
    ):
        self.state = state or ClientBookingState()
        self.api_prefix = api_prefix
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=30.0)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "BookingFlowClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self.client.request(method, f"{self.api_prefix}{path}", **kwargs)
        except httpx.HTTPError as e:
            error = ClientFlowError(f"Network error: {e}", "network_error", retryable=True)
            self.state.fail(error)
            raise error
        if response.status_code >= 400:
            error = ClientFlowError.from_response(response)
            logger.warning(f"{method} {path} failed: {error.status_code} {error.message}")
            self.state.fail(error)
            raise error
        return response.json()

    def _require_booking(self) -> str:
        if not self.state.booking_id:
            raise ClientFlowError("No booking in progress", "missing_booking")
        return self.state.booking_id

    async def refresh(self) -> ClientBookingState:
        """Reload the mirror from the server's booking record."""
        body = await self._request("GET", f"/bookings/{self._require_booking()}")
        self.state.replace_from_server(body)
        return self.state

    async def initialize(
        self,
        builder_id: str,
        session_type_id: str,
        client_id: str | None = None,
        client_email: str | None = None,
    ) -> ClientBookingState:
        booking_id = self.state.booking_id or str(uuid.uuid4())
        body = await self._request(
            "POST",
            "/bookings/initialize",
            json={
                "bookingId": booking_id,
                "builderId": builder_id,
                "sessionTypeId": session_type_id,
                "clientId": client_id,
                "clientEmail": client_email,
            },
        )
        self.state.replace_from_server(body)
        return self.state

    async def dispatch(
        self, event: BookingEvent | str, data: dict[str, Any] | None = None
    ) -> ClientBookingState:
        """Send one event to the Transition API."""
        event_name = event.value if isinstance(event, BookingEvent) else str(event)
        body = await self._request(
            "POST",
            f"/bookings/{self._require_booking()}/transition",
            json={"event": event_name, "data": data or {}},
        )
        self.state.replace_from_server(body)
        return self.state

    async def start_checkout(self, return_url: str | None = None) -> str | None:
        """Open a checkout session; returns the provider redirect URL."""
        body = await self._request(
            "POST",
            "/payments/checkout/create",
            json={"bookingId": self._require_booking(), "returnUrl": return_url},
        )
        await self.refresh()
        self.state.checkout_url = body.get("url")
        return self.state.checkout_url

    async def check_payment(self) -> str:
        """Ask the server for the payment status; returns PAID, FAILED or PENDING."""
        if not self.state.payment_session_id:
            raise ClientFlowError("No checkout session to check", "missing_session")
        body = await self._request(
            "GET",
            "/payments/checkout/status",
            params={"sessionId": self.state.payment_session_id},
        )
        self.state.booking_id = body.get("bookingId") or self.state.booking_id
        await self.refresh()
        return body["paymentStatus"]

    async def resume(self) -> ClientBookingState:
        """Resume after a redirect; the local copy is only a hint."""
        if self.state.payment_session_id and (
            self.state.awaiting_payment or self.state.step is BookingState.IDLE
        ):
            await self.check_payment()
            return self.state
        return await self.refresh()
