from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

RunMode = Literal["single", "batch"]


@dataclass(frozen=True)
class NotificationRecord:
    # Detached view of a notification row so the dispatcher never holds ORM state across sessions.
    id: str
    user_id: str
    message: str
    notification_type: str
    priority: str
    job_id: str | None
    action_data: Any
    created_at: datetime | None


@dataclass(frozen=True)
class PendingNotification:
    # Work-set entry annotated with the ledger context the retry policy needs.
    notification: NotificationRecord
    attempt_count: int = 0
    last_attempt_at: datetime | None = None


@dataclass(frozen=True)
class RecipientProfile:
    user_id: str
    display_name: str | None
    mobile_token: str | None
    web_token: str | None
    preferences: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LatestAttempt:
    sequence: int
    sent_at: datetime | None


@dataclass(frozen=True)
class DeliveryAttempt:
    notification_id: str
    user_id: str
    sequence: int
    success: bool
    error_code: str | None
    response: Any
    endpoint: str | None
    sent_at: datetime


@dataclass
class RunSummary:
    run_id: str
    mode: RunMode
    dry_run: bool
    success: bool = True
    selected_count: int = 0
    processed: int = 0
    sent_success: int = 0
    sent_failed: int = 0
    skipped_max_retries: int = 0
    skipped_cooldown: int = 0
    skipped_preferences: int = 0
    missing_token: int = 0
    message: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        # Drop empty optional fields so trigger payloads match the counters-only shape.
        payload = asdict(self)
        for key in ("message", "error"):
            if payload[key] is None:
                payload.pop(key)
        return payload

    def log_line(self) -> str:
        return (
            f"run_id={self.run_id} mode={self.mode} dry_run={self.dry_run} "
            f"selected_count={self.selected_count} processed={self.processed} "
            f"sent_success={self.sent_success} sent_failed={self.sent_failed} "
            f"skipped_max_retries={self.skipped_max_retries} skipped_cooldown={self.skipped_cooldown} "
            f"skipped_preferences={self.skipped_preferences} missing_token={self.missing_token}"
        )
