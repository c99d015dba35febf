from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Use JSONB on Postgres while keeping SQLite usable for local runs and tests.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class AppNotification(Base):
    __tablename__ = "app_notifications"

    # Rows are written by upstream producers; the dispatcher only reads them.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    message: Mapped[str] = mapped_column(Text)
    notification_type: Mapped[str] = mapped_column(String)
    priority: Mapped[str] = mapped_column(String, default="normal")
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Mobile and web registrations are independent endpoints for the same user.
    fcm_token: Mapped[str | None] = mapped_column(String, nullable=True)
    fcm_token_web: Mapped[str | None] = mapped_column(String, nullable=True)
    # Missing keys mean enabled; only an explicit false opts the user out of a type.
    notification_prefs: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)


class NotificationDeliveryLog(Base):
    __tablename__ = "notification_delivery_log"
    __table_args__ = (
        UniqueConstraint("notification_id", "retry_count", name="uq_delivery_log_notification_attempt"),
        Index("ix_delivery_log_notification_sent_at", "notification_id", "sent_at"),
        Index("ix_delivery_log_notification_success", "notification_id", "success"),
    )

    # Append-only ledger; one row per processed notification per run.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    # Representative endpoint only, even when several endpoints were targeted.
    fcm_token: Mapped[str | None] = mapped_column(String, nullable=True)
    fcm_response: Mapped[Any] = mapped_column(JSONType, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Attempt sequence per notification; never reset.
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False)


class DispatcherRunLock(Base):
    __tablename__ = "dispatcher_run_locks"

    # A row exists only while a run holds the lease.
    lock_key: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
