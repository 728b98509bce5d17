from __future__ import annotations

from secrets import token_urlsafe

from parcelnotify.core.errors import MissingSubjectError
from parcelnotify.domain.intents import KEY_BY_RECIPIENT_DESTINATION, KEY_BY_SUBJECT, get_intent_policy


NO_SUBJECT = "no-subject"


def build_idempotency_key(
    *,
    intent: str,
    household_id: str,
    parcel_id: str | None,
    to_e164: str,
) -> str:
    # Keys must be stable across redundant triggers for the same logical message.
    policy = get_intent_policy(intent)
    if policy is not None and policy.key_shape == KEY_BY_SUBJECT:
        if not parcel_id:
            raise MissingSubjectError(f"{intent} requires a parcel_id")
        return f"{intent}|{parcel_id}"
    if policy is not None and policy.key_shape == KEY_BY_RECIPIENT_DESTINATION:
        # Including the phone lets a household re-enrol after changing numbers.
        return f"{intent}|{household_id}|{to_e164}"
    return f"{intent}|{household_id}|{parcel_id or NO_SUBJECT}"


def build_resend_idempotency_key(*, intent: str, parcel_id: str) -> str:
    # Operator resends deliberately escape the per-parcel key of the original message.
    return f"{intent}|{parcel_id}|retry|{token_urlsafe(6)}"
