from __future__ import annotations

from typing import Protocol

from pushdispatch.domain.records import (
    DeliveryAttempt,
    LatestAttempt,
    NotificationRecord,
    PendingNotification,
    RecipientProfile,
)


class DispatchStore(Protocol):
    """Data-store capabilities the dispatcher consumes; nothing else is read or written."""

    async def fetch_notification(self, notification_id: str) -> NotificationRecord | None:
        ...

    async def fetch_undelivered_notifications(self, limit: int) -> list[PendingNotification]:
        ...

    async def fetch_profile(self, user_id: str) -> RecipientProfile | None:
        ...

    async def has_successful_delivery(self, notification_id: str) -> bool:
        ...

    async def latest_attempt(self, notification_id: str) -> LatestAttempt | None:
        ...

    async def append_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        ...

    async def try_acquire_run_lock(self, key: str, owner: str, ttl_s: int) -> bool:
        ...

    async def renew_run_lock(self, key: str, owner: str, ttl_s: int) -> bool:
        ...

    async def release_run_lock(self, key: str, owner: str) -> None:
        ...


class AccessTokenProvider(Protocol):
    @property
    def project_id(self) -> str | None:
        ...

    async def get_token(self) -> str:
        ...
