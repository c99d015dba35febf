from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
import math

MAX_ATTEMPTS = 5
COOLDOWN = timedelta(minutes=2)


class RetryDecision(str, Enum):
    ELIGIBLE = "eligible"
    COOLDOWN_ACTIVE = "cooldown_active"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"


def evaluate_retry_policy(
    *,
    attempt_count: int,
    last_attempt_at: datetime | None,
    now: datetime,
    max_attempts: int = MAX_ATTEMPTS,
    cooldown: timedelta = COOLDOWN,
) -> RetryDecision:
    """Decide whether a notification may be attempted now.

    The attempt cap wins over the cooldown so exhausted notifications are reported
    as such no matter how recently they were tried. The cooldown window is
    half-open: an attempt exactly ``cooldown`` ago is eligible again.
    """
    if int(attempt_count) >= max_attempts:
        return RetryDecision.MAX_RETRIES_EXCEEDED
    if last_attempt_at is not None and now - last_attempt_at < cooldown:
        return RetryDecision.COOLDOWN_ACTIVE
    return RetryDecision.ELIGIBLE


def cooldown_remaining_s(*, last_attempt_at: datetime, now: datetime, cooldown: timedelta = COOLDOWN) -> int:
    remaining = (last_attempt_at + cooldown - now).total_seconds()
    return max(0, math.ceil(remaining))
