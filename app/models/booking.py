"""Booking-related database models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.database import Base
from app.domain.booking_state import BookingState

if TYPE_CHECKING:
    from app.models.session_type import SessionType


def utcnow() -> datetime:
    return datetime.now(UTC)


class Booking(Base):
    """Booking record; ``current_state`` is the only authoritative discriminant."""

    __tablename__ = "bookings"

    # Client generated so the flow can reference it before the server confirms
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    builder_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    session_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("session_types.id"), nullable=False, index=True
    )
    client_id: Mapped[str | None] = mapped_column(String(64), index=True)
    client_email: Mapped[str | None] = mapped_column(String(255))

    # Price snapshot (smallest currency unit)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    # External linkage
    scheduling_event_uri: Mapped[str | None] = mapped_column(String(512), index=True)
    scheduling_invitee_uri: Mapped[str | None] = mapped_column(String(512), index=True)
    payment_session_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    refund_id: Mapped[str | None] = mapped_column(String(255))

    # Session times
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rescheduled_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # State
    current_state: Mapped[str] = mapped_column(
        String(40), nullable=False, default=BookingState.IDLE.value, index=True
    )
    state_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    last_transition: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    # Recovery
    recovery_token: Mapped[str | None] = mapped_column(Text)
    recovery_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Error tracking
    last_error_code: Mapped[str | None] = mapped_column(String(100))
    last_error_message: Mapped[str | None] = mapped_column(Text)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Cancellation
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Optimistic lock
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    session_type: Mapped["SessionType"] = relationship("SessionType", lazy="raise")
    transitions: Mapped[list["BookingTransition"]] = relationship(
        "BookingTransition",
        back_populates="booking",
        order_by="BookingTransition.created_at",
        lazy="raise",
    )
    effects: Mapped[list["BookingEffect"]] = relationship(
        "BookingEffect", back_populates="booking", lazy="raise"
    )

    @property
    def state(self) -> BookingState:
        return BookingState(self.current_state)

    @property
    def history(self) -> list[dict[str, Any]]:
        return list((self.state_data or {}).get("history", []))


class BookingTransition(Base):
    """Append-only log of applied transitions."""

    __tablename__ = "booking_transitions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_state: Mapped[str] = mapped_column(String(40), nullable=False)
    to_state: Mapped[str] = mapped_column(String(40), nullable=False)
    event: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="api")
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    effects: Mapped[list[str] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )

    booking: Mapped["Booking"] = relationship("Booking", back_populates="transitions")


class BookingEffect(Base):
    """Transactional outbox row for a described side effect."""

    __tablename__ = "booking_effects"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    effect: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )  # pending, done, failed
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    booking: Mapped["Booking"] = relationship("Booking", back_populates="effects")
