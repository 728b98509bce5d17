from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from parcelnotify.core.config import get_settings


# Exceptions raised by the transport are treated as a generic server error.
EXCEPTION_STATUS_CODE = 500
_RATE_LIMITED = 429


def is_retriable_status(status_code: int | None) -> bool:
    # Rate limiting and the 5xx family are transient; everything else is permanent.
    if status_code is None:
        return False
    code = int(status_code)
    return code == _RATE_LIMITED or 500 <= code <= 599


def should_retry(
    *,
    attempt_number: int,
    status_code: int | None,
    max_attempts: int,
    within_window: bool = True,
) -> bool:
    """Decide whether a failed attempt earns another try.

    ``attempt_number`` is the 1-based number of the attempt that just failed. A
    deadline that already passed wins over everything else.
    """
    if not within_window:
        return False
    if attempt_number >= max(1, int(max_attempts)):
        return False
    return is_retriable_status(status_code)


def parse_backoff_minutes(raw: str) -> tuple[int, ...]:
    values = tuple(int(item.strip()) for item in raw.split(",") if item.strip())
    if not values or any(value <= 0 for value in values):
        raise ValueError("notify_retry_backoff_minutes must list positive integers")
    return values


def backoff_delay(attempt_number: int, schedule: tuple[int, ...] | None = None) -> timedelta:
    # Fixed attempt-indexed delays: attempt 1 -> first value, attempt 2 -> second, then repeat the last.
    schedule = schedule or parse_backoff_minutes(get_settings().notify_retry_backoff_minutes)
    index = min(max(1, int(attempt_number)), len(schedule)) - 1
    return timedelta(minutes=schedule[index])


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    next_attempt_at: datetime | None
    reason: str


def decide_after_failure(
    *,
    attempt_number: int,
    status_code: int | None,
    now: datetime,
    deadline: datetime | None,
    max_attempts: int | None = None,
) -> RetryDecision:
    max_attempts = max_attempts or max(1, int(get_settings().notify_max_attempts))
    if deadline is not None and deadline <= now:
        return RetryDecision(retry=False, next_attempt_at=None, reason="deadline_passed")
    if not is_retriable_status(status_code):
        return RetryDecision(retry=False, next_attempt_at=None, reason="permanent")
    if not should_retry(
        attempt_number=attempt_number,
        status_code=status_code,
        max_attempts=max_attempts,
    ):
        return RetryDecision(retry=False, next_attempt_at=None, reason="max_attempts_exceeded")
    # A retry landing after the window closes is cancelled by the send-time re-check instead.
    return RetryDecision(retry=True, next_attempt_at=now + backoff_delay(attempt_number), reason="retriable")
