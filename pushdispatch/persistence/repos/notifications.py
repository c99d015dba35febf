from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pushdispatch.domain.models import AppNotification, NotificationDeliveryLog, Profile


async def get_visible_notification(session: AsyncSession, notification_id: str) -> AppNotification | None:
    # Hidden notifications are never dispatched, so they are indistinguishable from missing ones here.
    result = await session.execute(
        select(AppNotification).where(
            AppNotification.id == notification_id,
            AppNotification.is_hidden.is_(False),
        )
    )
    return result.scalar_one_or_none()


async def list_undelivered_notifications(
    session: AsyncSession,
    *,
    limit: int,
) -> list[tuple[AppNotification, int, datetime | None]]:
    # Annotate each candidate with its ledger history so retry decisions need no extra round trips.
    attempts = (
        select(
            NotificationDeliveryLog.notification_id.label("notification_id"),
            func.max(NotificationDeliveryLog.retry_count).label("attempt_count"),
            func.max(NotificationDeliveryLog.sent_at).label("last_attempt_at"),
        )
        .group_by(NotificationDeliveryLog.notification_id)
        .subquery()
    )
    delivered = (
        select(NotificationDeliveryLog.id)
        .where(
            NotificationDeliveryLog.notification_id == AppNotification.id,
            NotificationDeliveryLog.success.is_(True),
        )
        .exists()
    )
    rows = (
        await session.execute(
            select(AppNotification, attempts.c.attempt_count, attempts.c.last_attempt_at)
            .outerjoin(attempts, attempts.c.notification_id == AppNotification.id)
            .where(AppNotification.is_hidden.is_(False), ~delivered)
            .order_by(AppNotification.created_at.asc(), AppNotification.id.asc())
            .limit(max(1, int(limit)))
        )
    ).all()
    return [(row[0], int(row[1] or 0), row[2]) for row in rows]


async def get_profile(session: AsyncSession, user_id: str) -> Profile | None:
    return await session.get(Profile, user_id)
