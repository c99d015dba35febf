from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushdispatch.core.errors import DispatchStoreError
from pushdispatch.domain.models import AppNotification, Profile
from pushdispatch.domain.records import (
    DeliveryAttempt,
    LatestAttempt,
    NotificationRecord,
    PendingNotification,
    RecipientProfile,
)
from pushdispatch.persistence.repos import delivery_log, notifications, run_locks


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back; every stored timestamp is UTC, so reattach it.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: AppNotification) -> NotificationRecord:
    return NotificationRecord(
        id=row.id,
        user_id=row.user_id,
        message=row.message,
        notification_type=row.notification_type,
        priority=row.priority or "normal",
        job_id=row.job_id,
        action_data=row.action_data,
        created_at=as_utc(row.created_at),
    )


def _to_profile(row: Profile) -> RecipientProfile:
    prefs = row.notification_prefs if isinstance(row.notification_prefs, dict) else {}
    return RecipientProfile(
        user_id=row.id,
        display_name=row.display_name,
        mobile_token=row.fcm_token,
        web_token=row.fcm_token_web,
        preferences=dict(prefs),
    )


class SqlDispatchStore:
    """SQLAlchemy implementation of the dispatcher's data-store contract.

    Every operation runs in its own short session and commits immediately, so the
    run lease and ledger rows become visible to concurrent runs without waiting
    for the surrounding run to finish.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from pushdispatch.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.warning("dispatch_store_error operation=%s error=%s", operation, exc)
            raise DispatchStoreError(f"{operation} failed: {exc}") from exc

    async def fetch_notification(self, notification_id: str) -> NotificationRecord | None:
        async with self._session("fetch_notification") as session:
            row = await notifications.get_visible_notification(session, notification_id)
            return _to_record(row) if row is not None else None

    async def fetch_undelivered_notifications(self, limit: int) -> list[PendingNotification]:
        async with self._session("fetch_undelivered_notifications") as session:
            rows = await notifications.list_undelivered_notifications(session, limit=limit)
            return [
                PendingNotification(
                    notification=_to_record(row),
                    attempt_count=attempt_count,
                    last_attempt_at=as_utc(last_attempt_at),
                )
                for row, attempt_count, last_attempt_at in rows
            ]

    async def fetch_profile(self, user_id: str) -> RecipientProfile | None:
        async with self._session("fetch_profile") as session:
            row = await notifications.get_profile(session, user_id)
            return _to_profile(row) if row is not None else None

    async def has_successful_delivery(self, notification_id: str) -> bool:
        async with self._session("has_successful_delivery") as session:
            return await delivery_log.has_successful_delivery(session, notification_id)

    async def latest_attempt(self, notification_id: str) -> LatestAttempt | None:
        async with self._session("latest_attempt") as session:
            latest = await delivery_log.get_latest_attempt(session, notification_id)
            if latest is None:
                return None
            sequence, sent_at = latest
            return LatestAttempt(sequence=sequence, sent_at=as_utc(sent_at))

    async def append_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self._session("append_delivery_attempt") as session:
            await delivery_log.add_delivery_attempt(session, attempt)
            await session.commit()

    async def try_acquire_run_lock(self, key: str, owner: str, ttl_s: int) -> bool:
        async with self._session("try_acquire_run_lock") as session:
            return await run_locks.try_acquire_run_lock(
                session,
                lock_key=key,
                owner=owner,
                ttl_s=ttl_s,
                now=_utc_now(),
            )

    async def renew_run_lock(self, key: str, owner: str, ttl_s: int) -> bool:
        async with self._session("renew_run_lock") as session:
            return await run_locks.renew_run_lock(
                session,
                lock_key=key,
                owner=owner,
                ttl_s=ttl_s,
                now=_utc_now(),
            )

    async def release_run_lock(self, key: str, owner: str) -> None:
        async with self._session("release_run_lock") as session:
            released = await run_locks.release_run_lock(session, lock_key=key, owner=owner)
            if not released:
                logger.warning("dispatch_lock_release_noop lock_key=%s owner=%s", key, owner)
