"""Webhook endpoints for the scheduling and payment providers.

Both verify the signature over the raw body before anything else. Once a
delivery is verified it is acknowledged with 200; processing failures go to
the retry queue instead of being reported back to the provider.
"""

import json
import logging

from fastapi import APIRouter, Header, HTTPException, Request, status

from app.adapters.payment import translate_payment_event
from app.adapters.scheduling import translate_scheduling_webhook
from app.api.deps import PaymentGatewayDep, SchedulingGatewayDep, Webhooks
from app.gateways.calendly_gateway import SIGNATURE_HEADER
from app.schemas.payment import WebhookAck
from app.services.webhook_service import PROVIDER_PAYMENT, PROVIDER_SCHEDULING

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/scheduling", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def scheduling_webhook(
    request: Request,
    gateway: SchedulingGatewayDep,
    webhooks: Webhooks,
    signature: str | None = Header(None, alias=SIGNATURE_HEADER),
    delivery_id: str | None = Header(None, alias="X-Webhook-Id"),
) -> WebhookAck:
    """Handle scheduling provider events (invitee created, canceled, rescheduled)."""
    payload = await request.body()

    # Raises WebhookSignatureError -> 401
    gateway.verify_webhook(payload, signature)

    try:
        body = json.loads(payload)
    except ValueError:
        logger.warning("Scheduling webhook body is not valid JSON; acknowledged and dropped")
        return WebhookAck(status="ignored")
    if not isinstance(body, dict):
        logger.warning("Scheduling webhook body is not an object; acknowledged and dropped")
        return WebhookAck(status="ignored")

    translation = translate_scheduling_webhook(body, header_id=delivery_id)
    record, duplicate = await webhooks.receive(PROVIDER_SCHEDULING, translation, body)
    return WebhookAck(duplicate=duplicate, status=record.status if record else None)


@router.post("/payment", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def payment_webhook(
    request: Request,
    gateway: PaymentGatewayDep,
    webhooks: Webhooks,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> WebhookAck:
    """Handle payment provider events (checkout completed, expired, failed)."""
    payload = await request.body()

    if not stripe_signature:
        logger.warning("Payment webhook without signature header")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    event = gateway.verify_webhook(payload, stripe_signature)
    if event is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    translation = translate_payment_event(event)
    record, duplicate = await webhooks.receive(PROVIDER_PAYMENT, translation, event)
    return WebhookAck(duplicate=duplicate, status=record.status if record else None)
