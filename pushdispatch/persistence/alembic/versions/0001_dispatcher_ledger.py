"""add push delivery ledger and dispatcher run lease

Revision ID: 0001_dispatcher_ledger
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_dispatcher_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Append-only attempt history; one row per processed notification per run.
    op.create_table(
        "notification_delivery_log",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("fcm_token", sa.String(), nullable=True),
        sa.Column("fcm_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("notification_id", "retry_count", name="uq_delivery_log_notification_attempt"),
    )
    op.create_index(
        "ix_delivery_log_notification_sent_at",
        "notification_delivery_log",
        ["notification_id", "sent_at"],
    )
    op.create_index(
        "ix_delivery_log_notification_success",
        "notification_delivery_log",
        ["notification_id", "success"],
    )

    # Lease row shared by every dispatcher process; present only while a run holds it.
    op.create_table(
        "dispatcher_run_locks",
        sa.Column("lock_key", sa.String(), nullable=False),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lock_key"),
    )


def downgrade() -> None:
    op.drop_table("dispatcher_run_locks")
    op.drop_index("ix_delivery_log_notification_success", table_name="notification_delivery_log")
    op.drop_index("ix_delivery_log_notification_sent_at", table_name="notification_delivery_log")
    op.drop_table("notification_delivery_log")
