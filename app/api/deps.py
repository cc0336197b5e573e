"""API dependencies: database session, gateways and services.

Collaborators are built here from settings and injected, so tests can
override any of them through ``app.dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.database import get_db
from app.gateways.base import PaymentGateway, SchedulingGateway
from app.services.checkout_service import CheckoutService
from app.services.effect_service import (
    CeleryEffectDispatcher,
    EffectDispatcher,
    EffectExecutor,
    InlineEffectDispatcher,
)
from app.services.gateway_service import gateway_service
from app.services.notification_service import NotificationService, notification_service
from app.services.transition_service import TransitionService
from app.services.webhook_service import WebhookService

DbSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def get_payment_gateway() -> PaymentGateway:
    return gateway_service.payment


def get_scheduling_gateway() -> SchedulingGateway:
    return gateway_service.scheduling


def get_notifier() -> NotificationService:
    return notification_service


async def get_effect_dispatcher(
    db: DbSession,
    config: AppSettings,
    payment_gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    scheduling_gateway: Annotated[SchedulingGateway, Depends(get_scheduling_gateway)],
    notifier: Annotated[NotificationService, Depends(get_notifier)],
) -> EffectDispatcher:
    """Inline execution in development and tests, Celery otherwise."""
    if config.run_effects_inline:
        return InlineEffectDispatcher(
            EffectExecutor(db, payment_gateway, scheduling_gateway, notifier, config)
        )
    return CeleryEffectDispatcher()


async def get_transition_service(
    db: DbSession,
    config: AppSettings,
    dispatcher: Annotated[EffectDispatcher, Depends(get_effect_dispatcher)],
) -> TransitionService:
    return TransitionService(db, dispatcher=dispatcher, config=config)


async def get_checkout_service(
    transitions: Annotated[TransitionService, Depends(get_transition_service)],
    payment_gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    config: AppSettings,
) -> CheckoutService:
    return CheckoutService(transitions, payment_gateway, config)


async def get_webhook_service(
    db: DbSession,
    transitions: Annotated[TransitionService, Depends(get_transition_service)],
    config: AppSettings,
) -> WebhookService:
    return WebhookService(db, transitions, config)


Transitions = Annotated[TransitionService, Depends(get_transition_service)]
Checkout = Annotated[CheckoutService, Depends(get_checkout_service)]
Webhooks = Annotated[WebhookService, Depends(get_webhook_service)]
PaymentGatewayDep = Annotated[PaymentGateway, Depends(get_payment_gateway)]
SchedulingGatewayDep = Annotated[SchedulingGateway, Depends(get_scheduling_gateway)]
