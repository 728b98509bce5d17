from parcelnotify.services.notifications.idempotency import (
    NO_SUBJECT,
    build_idempotency_key,
    build_resend_idempotency_key,
)
from parcelnotify.services.notifications.retry import (
    RetryDecision,
    backoff_delay,
    decide_after_failure,
    is_retriable_status,
    should_retry,
)

__all__ = [
    "NO_SUBJECT",
    "build_idempotency_key",
    "build_resend_idempotency_key",
    "RetryDecision",
    "backoff_delay",
    "decide_after_failure",
    "is_retriable_status",
    "should_retry",
]
