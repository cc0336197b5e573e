"""Base provider gateway interfaces.

Gateways only talk to the external provider. They never read or write
booking state; translation into state machine events lives in app.adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class GatewayType(str, Enum):
    """Supported external providers."""

    STRIPE = "stripe"
    CALENDLY = "calendly"


@dataclass
class CheckoutSessionResult:
    """Result of a checkout session create or retrieve."""

    success: bool
    session_id: str | None = None
    url: str | None = None
    status: str | None = None  # open, complete, expired
    payment_status: str | None = None  # paid, unpaid, no_payment_required
    payment_intent_id: str | None = None
    metadata: dict | None = None
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class RefundResult:
    """Result of a refund operation."""

    success: bool
    refund_id: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class CancellationResult:
    """Result of cancelling a scheduled event with the provider."""

    success: bool
    already_cancelled: bool = False
    error_message: str | None = None


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""

    @abstractmethod
    async def create_checkout_session(
        self,
        amount: int,
        currency: str,
        booking_id: str,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: dict | None = None,
        customer_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> CheckoutSessionResult:
        """Create a hosted checkout session scoped to one booking.

        Args:
            amount: Amount in smallest currency unit
            currency: ISO currency code
            booking_id: Booking id, carried in session metadata for correlation
            description: Line item description
            success_url: Redirect after payment
            cancel_url: Redirect when the client abandons checkout
            metadata: Additional metadata
            customer_email: Prefill for the checkout form
            idempotency_key: Provider idempotency key for this attempt

        Returns:
            CheckoutSessionResult with the session id and redirect URL
        """

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionResult:
        """Fetch the current status of a checkout session."""

    @abstractmethod
    async def process_refund(
        self,
        payment_intent_id: str,
        amount: int | None,
        reason: str,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        """Refund a captured payment (full refund when ``amount`` is None)."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> dict | None:
        """Verify webhook signature and parse payload.

        Returns:
            Parsed event dict if valid, None if invalid
        """


class SchedulingGateway(ABC):
    """Abstract base class for scheduling providers."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""

    @abstractmethod
    async def cancel_event(self, event_uri: str, reason: str | None = None) -> CancellationResult:
        """Cancel a scheduled event on the provider side."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str | None) -> None:
        """Raise WebhookSignatureError unless ``signature`` matches ``payload``."""
