from __future__ import annotations

from enum import Enum
import json
from typing import Any

from pushdispatch.core.config import Settings, get_settings
from pushdispatch.domain.records import NotificationRecord

DEFAULT_TITLE = "New Notification"


class NotificationType(str, Enum):
    JOB_ASSIGNMENT = "job_assignment"
    JOB_REASSIGNMENT = "job_reassignment"
    JOB_CONFIRMATION = "job_confirmation"
    JOB_CANCELLATION = "job_cancellation"
    JOB_CANCELLED = "job_cancelled"
    JOB_STATUS_CHANGE = "job_status_change"
    PAYMENT_REMINDER = "payment_reminder"
    SYSTEM_ALERT = "system_alert"
    JOB_START = "job_start"
    STEP_COMPLETION = "step_completion"
    JOB_COMPLETION = "job_completion"
    JOB_START_DEADLINE_WARNING_90MIN = "job_start_deadline_warning_90min"
    JOB_START_DEADLINE_WARNING_60MIN = "job_start_deadline_warning_60min"

    @classmethod
    def parse(cls, raw: str | None) -> NotificationType | None:
        try:
            return cls(raw)
        except ValueError:
            return None


_TITLES: dict[NotificationType, str] = {
    NotificationType.JOB_ASSIGNMENT: "New Job Assignment",
    NotificationType.JOB_REASSIGNMENT: "Job Reassigned",
    NotificationType.JOB_CONFIRMATION: "Job Confirmed",
    NotificationType.JOB_CANCELLATION: "Job Cancelled",
    NotificationType.JOB_CANCELLED: "Job Cancelled",
    NotificationType.JOB_STATUS_CHANGE: "Job Status Updated",
    NotificationType.PAYMENT_REMINDER: "Payment Reminder",
    NotificationType.SYSTEM_ALERT: "System Alert",
    NotificationType.JOB_START: "Job Started",
    NotificationType.STEP_COMPLETION: "Driver Update",
    NotificationType.JOB_COMPLETION: "Job Completed",
    NotificationType.JOB_START_DEADLINE_WARNING_90MIN: "Job Start Warning",
    NotificationType.JOB_START_DEADLINE_WARNING_60MIN: "Job Start Urgent Warning",
}

_ACTIONS: dict[NotificationType, str] = {
    NotificationType.JOB_ASSIGNMENT: "new_job_assigned",
    NotificationType.JOB_REASSIGNMENT: "job_reassigned",
    NotificationType.JOB_CONFIRMATION: "job_status_changed",
    NotificationType.JOB_CANCELLATION: "job_cancelled",
    NotificationType.JOB_CANCELLED: "job_cancelled",
    NotificationType.JOB_STATUS_CHANGE: "job_status_changed",
    NotificationType.PAYMENT_REMINDER: "payment_reminder",
    NotificationType.SYSTEM_ALERT: "system_alert",
    NotificationType.JOB_START: "job_status_changed",
    NotificationType.STEP_COMPLETION: "job_status_changed",
    NotificationType.JOB_COMPLETION: "job_status_changed",
    NotificationType.JOB_START_DEADLINE_WARNING_90MIN: "job_status_changed",
    NotificationType.JOB_START_DEADLINE_WARNING_60MIN: "job_status_changed",
}

# A new NotificationType member without table entries must break at import, not at send time.
_UNMAPPED = sorted(member.value for member in NotificationType if member not in _TITLES or member not in _ACTIONS)
if _UNMAPPED:
    raise RuntimeError(f"notification types missing title/action mapping: {', '.join(_UNMAPPED)}")


def notification_title(notification_type: str) -> str:
    parsed = NotificationType.parse(notification_type)
    if parsed is None:
        return DEFAULT_TITLE
    return _TITLES[parsed]


def notification_action(notification_type: str) -> str:
    # Unknown tags pass through so newer clients can still route them.
    parsed = NotificationType.parse(notification_type)
    if parsed is None:
        return notification_type
    return _ACTIONS[parsed]


def mask_token(token: str | None) -> str:
    if not token:
        return ""
    return f"{token[:20]}..."


def _android_priority(priority: str | None) -> str:
    return "high" if priority == "high" else "normal"


def build_data_payload(notification: NotificationRecord, *, settings: Settings | None = None) -> dict[str, str]:
    # Gateway data maps only carry strings; the structured payload travels as JSON text.
    settings = settings or get_settings()
    action_data: Any = notification.action_data if notification.action_data is not None else {}
    return {
        "notification_id": str(notification.id),
        "notification_type": str(notification.notification_type),
        "action": notification_action(notification.notification_type),
        "job_id": str(notification.job_id) if notification.job_id else "",
        "action_data": json.dumps(action_data, separators=(",", ":"), default=str),
        "click_action": settings.push_click_action,
    }


def build_gateway_message(
    notification: NotificationRecord,
    endpoint: str,
    *,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    priority = _android_priority(notification.priority)
    return {
        "token": endpoint,
        "notification": {
            "title": notification_title(notification.notification_type),
            "body": notification.message,
        },
        "data": build_data_payload(notification, settings=settings),
        "android": {
            "priority": priority,
            "notification": {
                "sound": "default",
                "channel_id": settings.push_android_channel_id,
            },
        },
        "apns": {
            "payload": {
                "aps": {
                    "sound": "default",
                    "badge": 1,
                },
            },
        },
        "webpush": {
            "headers": {"Urgency": priority},
        },
    }
