"""Stripe payment gateway adapter."""

import asyncio
import logging

import stripe

from app.config import Settings, settings as default_settings
from app.core.exceptions import ExternalProviderError
from app.core.retry import retry_operation
from app.gateways.base import (
    CheckoutSessionResult,
    GatewayType,
    PaymentGateway,
    RefundResult,
)

logger = logging.getLogger(__name__)


class _ClientError(Exception):
    """Stripe rejected the request; retrying cannot help."""


def _as_dict(obj) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _session_result(obj) -> CheckoutSessionResult:
    session = _as_dict(obj)
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    return CheckoutSessionResult(
        success=True,
        session_id=session.get("id"),
        url=session.get("url"),
        status=session.get("status"),
        payment_status=session.get("payment_status"),
        payment_intent_id=payment_intent,
        metadata=dict(session.get("metadata") or {}),
        raw_response={"id": session.get("id"), "status": session.get("status")},
    )


class StripeGateway(PaymentGateway):
    """Stripe payment gateway implementation."""

    def __init__(self, config: Settings | None = None):
        config = config or default_settings
        self.secret_key = config.stripe_secret_key
        self.webhook_secret = config.stripe_webhook_secret

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    async def _call(self, name: str, func, **params):
        """Run a blocking SDK call off the event loop with bounded retries."""

        async def _attempt():
            try:
                return await asyncio.to_thread(func, api_key=self.secret_key, **params)
            except stripe.StripeError as e:
                # Only server and network errors are worth retrying
                if e.http_status and 400 <= e.http_status < 500:
                    raise _ClientError(e.user_message or str(e)) from e
                raise

        try:
            return await retry_operation(
                _attempt,
                provider=GatewayType.STRIPE.value,
                name=name,
                retry_on=(stripe.StripeError,),
            )
        except _ClientError as e:
            raise ExternalProviderError(GatewayType.STRIPE.value, str(e)) from e

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
        """Create a Stripe Checkout Session."""
        if not self.secret_key:
            return CheckoutSessionResult(success=False, error_message="Stripe not configured")

        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount,
                        "product_data": {"name": description},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": booking_id,
            "metadata": {"booking_id": booking_id, **(metadata or {})},
            "payment_intent_data": {"metadata": {"booking_id": booking_id}},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            session = await self._call(
                "create_checkout_session",
                stripe.checkout.Session.create,
                **params,
            )
        except ExternalProviderError as e:
            return CheckoutSessionResult(success=False, error_message=e.message)
        return _session_result(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionResult:
        """Retrieve a Stripe Checkout Session."""
        if not self.secret_key:
            return CheckoutSessionResult(success=False, error_message="Stripe not configured")

        try:
            session = await self._call(
                "retrieve_checkout_session", stripe.checkout.Session.retrieve, id=session_id
            )
        except ExternalProviderError as e:
            return CheckoutSessionResult(success=False, session_id=session_id, error_message=e.message)
        return _session_result(session)

    async def process_refund(
        self,
        payment_intent_id: str,
        amount: int | None,
        reason: str,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        """Process Stripe refund."""
        if not self.secret_key:
            return RefundResult(success=False, error_message="Stripe not configured")

        params = {
            "payment_intent": payment_intent_id,
            "reason": "requested_by_customer",
            "metadata": {"reason": reason[:500]},
        }
        if amount is not None:
            params["amount"] = amount
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            refund = _as_dict(await self._call("process_refund", stripe.Refund.create, **params))
        except ExternalProviderError as e:
            return RefundResult(success=False, error_message=e.message)

        return RefundResult(
            success=refund.get("status") in ("succeeded", "pending"),
            refund_id=refund.get("id"),
            raw_response={"status": refund.get("status"), "id": refund.get("id")},
        )

    def verify_webhook(self, payload: bytes, signature: str) -> dict | None:
        """Verify Stripe webhook signature."""
        if not self.webhook_secret:
            return None

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook verification failed: {e}")
            return None
        return _as_dict(event)
