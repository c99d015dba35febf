from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pushdispatch.domain.models import NotificationDeliveryLog
from pushdispatch.domain.records import DeliveryAttempt


async def has_successful_delivery(session: AsyncSession, notification_id: str) -> bool:
    row = await session.scalar(
        select(NotificationDeliveryLog.id)
        .where(
            NotificationDeliveryLog.notification_id == notification_id,
            NotificationDeliveryLog.success.is_(True),
        )
        .limit(1)
    )
    return row is not None


async def get_latest_attempt(session: AsyncSession, notification_id: str) -> tuple[int, datetime | None] | None:
    # Order by sequence rather than wall clock so clock skew between runs cannot reorder attempts.
    row = (
        await session.execute(
            select(NotificationDeliveryLog.retry_count, NotificationDeliveryLog.sent_at)
            .where(NotificationDeliveryLog.notification_id == notification_id)
            .order_by(NotificationDeliveryLog.retry_count.desc())
            .limit(1)
        )
    ).first()
    if row is None:
        return None
    return int(row[0] or 0), row[1]


async def add_delivery_attempt(session: AsyncSession, attempt: DeliveryAttempt) -> NotificationDeliveryLog:
    row = NotificationDeliveryLog(
        notification_id=attempt.notification_id,
        user_id=attempt.user_id,
        fcm_token=attempt.endpoint,
        fcm_response=attempt.response,
        success=attempt.success,
        error_message=attempt.error_code,
        sent_at=attempt.sent_at,
        retry_count=attempt.sequence,
    )
    session.add(row)
    return row
