from __future__ import annotations

from dataclasses import dataclass


PICKUP_REMINDER = "pickup_reminder"
PICKUP_UPDATED = "pickup_updated"
PICKUP_CANCELLED = "pickup_cancelled"
CONSENT_ENROLMENT = "consent_enrolment"

# Key shapes understood by the idempotency key generator.
KEY_BY_SUBJECT = "subject"
KEY_BY_RECIPIENT_DESTINATION = "recipient_destination"


@dataclass(frozen=True)
class IntentPolicy:
    """Per-intent behavior consulted by every stage of the delivery engine.

    ``key_shape`` selects how the idempotency key is derived. ``jit`` marks intents
    whose content depends on a live parcel and must be re-checked and re-rendered at
    send time. ``recover_when_stale`` allows the recovery sweep to re-queue records
    orphaned in ``sending``; only intents where a duplicate SMS is harmless belong
    here. ``cancel_if_subject_deleted`` is false for the cancellation message itself,
    whose parcel is deleted by definition. ``deadline_from_subject`` makes the
    parcel's pickup window end the retry deadline.
    """

    intent: str
    key_shape: str
    template: str
    jit: bool
    recover_when_stale: bool
    cancel_if_subject_deleted: bool = True
    deadline_from_subject: bool = True
    operator_resend: bool = False


INTENT_POLICIES: dict[str, IntentPolicy] = {
    PICKUP_REMINDER: IntentPolicy(
        intent=PICKUP_REMINDER,
        key_shape=KEY_BY_SUBJECT,
        template="reminder",
        jit=True,
        recover_when_stale=True,
        operator_resend=True,
    ),
    PICKUP_UPDATED: IntentPolicy(
        intent=PICKUP_UPDATED,
        key_shape=KEY_BY_SUBJECT,
        template="update",
        jit=True,
        recover_when_stale=True,
        operator_resend=True,
    ),
    PICKUP_CANCELLED: IntentPolicy(
        intent=PICKUP_CANCELLED,
        key_shape=KEY_BY_SUBJECT,
        template="cancellation",
        jit=True,
        recover_when_stale=True,
        cancel_if_subject_deleted=False,
        operator_resend=True,
    ),
    CONSENT_ENROLMENT: IntentPolicy(
        intent=CONSENT_ENROLMENT,
        key_shape=KEY_BY_RECIPIENT_DESTINATION,
        template="enrolment",
        jit=False,
        recover_when_stale=False,
        deadline_from_subject=False,
    ),
}


def get_intent_policy(intent: str) -> IntentPolicy | None:
    return INTENT_POLICIES.get(intent)


def stale_recovery_intents(override: str | None = None) -> frozenset[str]:
    # An explicit comma-delimited override replaces the table defaults entirely.
    if override is not None and override.strip():
        return frozenset(item.strip() for item in override.split(",") if item.strip())
    return frozenset(policy.intent for policy in INTENT_POLICIES.values() if policy.recover_when_stale)
