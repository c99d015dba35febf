from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable

from pushdispatch.domain.records import DeliveryAttempt, NotificationRecord
from pushdispatch.services.dispatch.contracts import DispatchStore


logger = logging.getLogger(__name__)

# Ledger error classifications persisted in error_message.
ERROR_MISSING_TOKEN = "missing_fcm_token"
ERROR_SKIPPED_PREFERENCES = "skipped_preferences"
ERROR_SEND_FAILED = "fcm_error"
ERROR_DRY_RUN = "dry_run"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerWriter:
    def __init__(self, store: DispatchStore, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._store = store
        self._clock = clock

    async def next_sequence(self, notification_id: str) -> int:
        latest = await self._store.latest_attempt(notification_id)
        return (latest.sequence if latest is not None else 0) + 1

    async def record(
        self,
        notification: NotificationRecord,
        *,
        success: bool,
        error_code: str | None,
        response: Any,
        endpoint: str | None = None,
    ) -> DeliveryAttempt:
        # Read-then-increment is safe because the run lease serializes writers.
        attempt = DeliveryAttempt(
            notification_id=notification.id,
            user_id=notification.user_id,
            sequence=await self.next_sequence(notification.id),
            success=success,
            error_code=None if success else error_code,
            response=response,
            endpoint=endpoint,
            sent_at=self._clock(),
        )
        await self._store.append_delivery_attempt(attempt)
        logger.debug(
            "delivery_attempt_recorded notification_id=%s sequence=%s success=%s error=%s",
            attempt.notification_id,
            attempt.sequence,
            attempt.success,
            attempt.error_code,
        )
        return attempt
