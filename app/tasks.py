"""Celery background tasks.

This module contains the booking background tasks:
- Effect execution (queued right after a transition commits)
- Webhook retry processing
- Stale booking reconciliation
"""

import asyncio
import logging

from celery import shared_task

from app.config import settings
from app.database import get_db_context
from app.services.effect_service import EffectExecutor, InlineEffectDispatcher
from app.services.gateway_service import gateway_service
from app.services.reconciliation_service import ReconciliationService
from app.services.transition_service import TransitionService
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

# One loop per worker process; the async engine's pool is bound to it
_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """Run async function in sync context."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


def _services(db):
    """Worker-side services; effects run in-process since we already are the worker."""
    dispatcher = InlineEffectDispatcher(EffectExecutor(db))
    transitions = TransitionService(db, dispatcher=dispatcher)
    return dispatcher, transitions


# ==================== EFFECT TASKS ====================


@shared_task(bind=True, max_retries=3)
def execute_booking_effects(self, booking_id: str):
    """Run pending outbox effects for one booking."""
    try:
        summary = run_async(_execute_booking_effects(booking_id))
        return {"status": "success", "booking_id": booking_id, **summary}
    except Exception as exc:
        logger.exception(f"Effect execution for booking {booking_id} failed")
        self.retry(exc=exc, countdown=60)


async def _execute_booking_effects(booking_id: str) -> dict[str, int]:
    async with get_db_context() as db:
        return await EffectExecutor(db).run_pending(booking_id)


# ==================== WEBHOOK TASKS ====================


@shared_task
def retry_webhook_events():
    """Re-process webhook deliveries whose retry time has come.

    Runs every minute.
    """
    summary = run_async(_retry_webhook_events())
    return {"status": "success", **summary}


async def _retry_webhook_events() -> dict[str, int]:
    async with get_db_context() as db:
        _, transitions = _services(db)
        service = WebhookService(db, transitions)
        return await service.retry_due(limit=settings.reconciliation_batch_size)


# ==================== RECONCILIATION TASKS ====================


@shared_task
def reconcile_stale_bookings():
    """Resolve abandoned flows and re-dispatch stuck effects.

    Runs every 15 minutes.
    """
    summary = run_async(_reconcile_stale_bookings())
    return {"status": "success", **summary}


async def _reconcile_stale_bookings() -> dict[str, int]:
    async with get_db_context() as db:
        dispatcher, transitions = _services(db)
        service = ReconciliationService(
            db, transitions, gateway_service.payment, dispatcher=dispatcher
        )
        summary = await service.reconcile_stale_bookings()
        summary["effects_redispatched"] = await service.redispatch_pending_effects()
        return summary
