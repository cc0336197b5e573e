"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test so separate sessions see each
other's commits. Mocks all external providers.
"""
import uuid
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

import app.models  # noqa: F401
from app.api.deps import get_db, get_notifier, get_payment_gateway, get_scheduling_gateway
from app.config import Settings, get_settings
from app.core.immutability import register_immutability_enforcement
from app.database import Base
from app.domain.booking_state import BookingEvent
from app.gateways.base import (
    CancellationResult,
    CheckoutSessionResult,
    PaymentGateway,
    RefundResult,
    SchedulingGateway,
)
from app.main import create_application
from app.models.session_type import SessionType
from app.services.effect_service import EffectExecutor, InlineEffectDispatcher
from app.services.notification_service import NotificationService
from app.services.transition_service import TransitionService
from tests.helpers import (
    BUILDER_ID,
    CALENDLY_KEY,
    EVENT_URI,
    INVITEE_URI,
    STRIPE_WEBHOOK_SECRET,
)


# Register Postgres types for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


register_immutability_enforcement()


@pytest.fixture
def test_settings():
    return Settings(
        environment="development",
        run_effects_inline=True,
        provider_call_initial_delay_seconds=0,
        calendly_webhook_signing_key=CALENDLY_KEY,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def paid_session_type(db):
    session_type = SessionType(
        id=uuid.uuid4(),
        builder_id=BUILDER_ID,
        title="Strategy session",
        duration_minutes=60,
        price=5000,
        currency="usd",
    )
    db.add(session_type)
    await db.commit()
    return session_type


@pytest.fixture
async def free_session_type(db):
    session_type = SessionType(
        id=uuid.uuid4(),
        builder_id=BUILDER_ID,
        title="Intro call",
        duration_minutes=15,
        price=0,
        currency="usd",
    )
    db.add(session_type)
    await db.commit()
    return session_type


@pytest.fixture
def payment_gateway():
    """Mock payment gateway; no real Stripe calls."""
    gateway = MagicMock(spec=PaymentGateway)
    gateway.create_checkout_session = AsyncMock(
        return_value=CheckoutSessionResult(
            success=True,
            session_id="cs_test_abc123",
            url="https://checkout.stripe.com/c/pay/cs_test_abc123",
            status="open",
            payment_status="unpaid",
        )
    )
    gateway.retrieve_checkout_session = AsyncMock(
        return_value=CheckoutSessionResult(
            success=True,
            session_id="cs_test_abc123",
            status="complete",
            payment_status="paid",
            payment_intent_id="pi_test_789",
        )
    )
    gateway.process_refund = AsyncMock(
        return_value=RefundResult(success=True, refund_id="re_test_001")
    )
    gateway.verify_webhook = MagicMock(return_value=None)
    return gateway


@pytest.fixture
def scheduling_gateway():
    """Mock scheduling gateway; no real Calendly calls."""
    gateway = MagicMock(spec=SchedulingGateway)
    gateway.cancel_event = AsyncMock(return_value=CancellationResult(success=True))
    gateway.verify_webhook = MagicMock(return_value=None)
    return gateway


@pytest.fixture
def notifier():
    mock = MagicMock(spec=NotificationService)
    mock.notify_booking_confirmed = AsyncMock(return_value=True)
    mock.notify_booking_cancelled = AsyncMock(return_value=True)
    mock.notify_payment_failed = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def executor(db, payment_gateway, scheduling_gateway, notifier, test_settings):
    return EffectExecutor(db, payment_gateway, scheduling_gateway, notifier, test_settings)


@pytest.fixture
def transitions(db, executor, test_settings):
    """Transition service running effects inline against the mocks."""
    return TransitionService(
        db, dispatcher=InlineEffectDispatcher(executor), config=test_settings
    )


@pytest.fixture
def booking_id():
    return str(uuid.uuid4())


@pytest.fixture
async def scheduled_booking(transitions, paid_session_type, booking_id):
    """Paid booking in CALENDLY_EVENT_SCHEDULED."""
    await transitions.initialize(booking_id, BUILDER_ID, str(paid_session_type.id))
    await transitions.apply(booking_id, BookingEvent.INITIATE_SCHEDULING)
    return await transitions.apply(
        booking_id,
        BookingEvent.SCHEDULE_EVENT,
        {
            "scheduling_event_uri": EVENT_URI,
            "scheduling_invitee_uri": INVITEE_URI,
            "start_time": "2026-11-02T15:00:00Z",
        },
    )


@pytest.fixture
def app(
    session_factory, test_settings, payment_gateway, scheduling_gateway, notifier
):
    application = create_application()

    async def _get_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    application.dependency_overrides[get_scheduling_gateway] = lambda: scheduling_gateway
    application.dependency_overrides[get_notifier] = lambda: notifier
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
async def pending_booking(transitions, scheduled_booking):
    """Paid booking in PAYMENT_PENDING on checkout session cs_test_abc123."""
    await transitions.apply(scheduled_booking.id, BookingEvent.INITIATE_PAYMENT)
    return await transitions.apply(
        scheduled_booking.id,
        BookingEvent.PAYMENT_PENDING,
        {"payment_session_id": "cs_test_abc123"},
    )


@pytest.fixture
async def confirmed_booking(transitions, pending_booking):
    """Paid booking in BOOKING_CONFIRMED."""
    await transitions.apply(
        pending_booking.id,
        BookingEvent.PAYMENT_PROCESSING,
        {"payment_intent_id": "pi_test_789"},
    )
    return await transitions.apply(
        pending_booking.id,
        BookingEvent.PAYMENT_SUCCEEDED,
        {"payment_session_id": "cs_test_abc123", "payment_intent_id": "pi_test_789"},
    )
