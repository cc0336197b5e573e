"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-17

Creates the booking orchestration tables:
- Session types (read-only catalogue)
- Bookings with optimistic version column
- Transition log (append-only) and effect outbox
- Webhook dedup and retry queue
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all database tables."""

    # ==================== SESSION TYPES ====================
    op.create_table(
        "session_types",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("builder_id", sa.String(64), nullable=False, index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("duration_minutes", sa.Integer, nullable=False, server_default="60"),
        sa.Column("price", sa.Integer, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("scheduling_event_type_uri", sa.String(512)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("builder_id", sa.String(64), nullable=False, index=True),
        sa.Column(
            "session_type_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("session_types.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("client_id", sa.String(64), index=True),
        sa.Column("client_email", sa.String(255)),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("scheduling_event_uri", sa.String(512), index=True),
        sa.Column("scheduling_invitee_uri", sa.String(512), index=True),
        sa.Column("payment_session_id", sa.String(255), unique=True),
        sa.Column("payment_intent_id", sa.String(255), index=True),
        sa.Column("refund_id", sa.String(255)),
        sa.Column("start_time", sa.DateTime(timezone=True)),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        sa.Column("rescheduled_from", sa.DateTime(timezone=True)),
        sa.Column("current_state", sa.String(40), nullable=False, server_default="IDLE", index=True),
        sa.Column(
            "state_data",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("last_transition", sa.DateTime(timezone=True), index=True),
        sa.Column("recovery_token", sa.Text),
        sa.Column("recovery_token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("last_error_code", sa.String(100)),
        sa.Column("last_error_message", sa.Text),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "booking_transitions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "booking_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("from_state", sa.String(40), nullable=False),
        sa.Column("to_state", sa.String(40), nullable=False),
        sa.Column("event", sa.String(40), nullable=False, index=True),
        sa.Column("source", sa.String(30), nullable=False, server_default="api"),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("effects", postgresql.JSONB),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True
        ),
    )

    op.create_table(
        "booking_effects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "booking_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("effect", sa.String(40), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )

    # ==================== WEBHOOKS ====================
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("provider_event_id", sa.String(512), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="received", index=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), index=True),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint(
            "provider", "provider_event_id", name="uq_webhook_events_provider_event"
        ),
    )


def downgrade() -> None:
    """Drop all database tables in reverse order."""
    op.drop_table("webhook_events")
    op.drop_table("booking_effects")
    op.drop_table("booking_transitions")
    op.drop_table("bookings")
    op.drop_table("session_types")
