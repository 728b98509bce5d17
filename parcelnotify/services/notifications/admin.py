from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.config import get_settings
from parcelnotify.core.errors import SmsActionError, SmsRecordNotFoundError
from parcelnotify.domain.intents import get_intent_policy, stale_recovery_intents
from parcelnotify.domain.models import FoodParcel, Household, OutgoingSms
from parcelnotify.persistence.repos.outgoing_sms import (
    CreateSmsData,
    create_sms_record,
    dismiss_sms_record,
    get_sms_record,
    has_recent_sms_for_parcel,
    list_failed_sms,
    restore_sms_record,
)
from parcelnotify.services.notifications.idempotency import build_resend_idempotency_key
from parcelnotify.services.notifications.phone import normalize_phone_to_e164


logger = logging.getLogger(__name__)

RESEND_MIN_LEAD = timedelta(hours=1)
RESEND_COOLDOWN = timedelta(minutes=5)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _stale_before(now: datetime) -> datetime:
    return now - timedelta(hours=get_settings().notify_health_window_hours)


def _stuck_before(now: datetime) -> datetime:
    return now - timedelta(minutes=max(0, int(get_settings().notify_stale_sending_minutes)))


def _recovery_intents() -> frozenset[str]:
    return stale_recovery_intents(get_settings().notify_stale_recovery_intents)


def failure_kind(record: OutgoingSms, *, now: datetime) -> str | None:
    # internal: our own terminal failure; provider: gateway reported non-delivery; stale: never confirmed;
    # stuck: left in sending by a crash and not eligible for automatic recovery.
    if record.status == "sending":
        claimed_at = record.claimed_at or record.created_at
        if record.intent not in _recovery_intents() and claimed_at < _stuck_before(now):
            return "stuck"
        return None
    if record.status == "failed":
        return "internal"
    if record.status == "sent" and record.provider_status in ("failed", "not delivered"):
        return "provider"
    if (
        record.status == "sent"
        and record.provider_status is None
        and record.sent_at is not None
        and record.sent_at < _stale_before(now)
    ):
        return "stale"
    return None


async def list_sms_failures(
    session: AsyncSession,
    *,
    limit: int = 100,
    now: datetime | None = None,
) -> list[OutgoingSms]:
    now = now or _utc_now()
    return await list_failed_sms(
        session,
        stale_before=_stale_before(now),
        stuck_before=_stuck_before(now),
        recovery_intents=_recovery_intents(),
        limit=limit,
    )


async def _require_record(session: AsyncSession, sms_id: str) -> OutgoingSms:
    record = await get_sms_record(session, sms_id)
    if record is None:
        raise SmsRecordNotFoundError(sms_id)
    return record


async def dismiss_sms(session: AsyncSession, sms_id: str, *, dismissed_by: str) -> OutgoingSms:
    await _require_record(session, sms_id)
    if not await dismiss_sms_record(session, sms_id, dismissed_by=dismissed_by):
        raise SmsActionError("ALREADY_DISMISSED", "SMS has already been dismissed", status_code=409)
    logger.info("sms dismissed id=%s by=%s", sms_id, dismissed_by)
    return await _require_record(session, sms_id)


async def restore_sms(session: AsyncSession, sms_id: str) -> OutgoingSms:
    await _require_record(session, sms_id)
    if not await restore_sms_record(session, sms_id):
        raise SmsActionError("NOT_DISMISSED", "SMS is not dismissed", status_code=409)
    return await _require_record(session, sms_id)


async def resend_failed_sms(
    session: AsyncSession,
    sms_id: str,
    *,
    requested_by: str,
    now: datetime | None = None,
) -> str:
    """Queue a fresh copy of a failed message and dismiss the original.

    The copy gets its own idempotency key so it escapes the original's dedupe slot.
    It uses the household's current phone number and is re-rendered at send time
    like any other parcel message.
    """
    now = now or _utc_now()
    original = await _require_record(session, sms_id)
    kind = failure_kind(original, now=now)
    if kind is None:
        raise SmsActionError("INVALID_ACTION", "SMS is not in a failed state")
    if kind == "stuck":
        # The gateway may already have accepted it; operators dismiss these after checking.
        raise SmsActionError("INVALID_ACTION", "SMS is stuck in sending and cannot be resent")
    if original.dismissed_at is not None:
        raise SmsActionError("INVALID_ACTION", "SMS has been dismissed")
    if not original.parcel_id:
        raise SmsActionError("INVALID_ACTION", "SMS has no associated parcel")
    policy = get_intent_policy(original.intent)
    if policy is None or not policy.operator_resend:
        raise SmsActionError("INVALID_ACTION", "SMS intent is not retryable")

    # Deleted parcels are still loaded; a cancellation notice refers to one by definition.
    parcel = await session.get(FoodParcel, original.parcel_id)
    if parcel is None:
        raise SmsActionError("PARCEL_NOT_FOUND", "Parcel not found")
    if parcel.pickup_date_time_earliest < now + RESEND_MIN_LEAD:
        raise SmsActionError("TOO_LATE", "Pickup starts in less than 1 hour")
    if await has_recent_sms_for_parcel(
        session,
        parcel_id=original.parcel_id,
        since=now - RESEND_COOLDOWN,
        exclude_id=original.id,
    ):
        raise SmsActionError("COOLDOWN_ACTIVE", "Please wait before retrying", status_code=429)
    household = await session.get(Household, parcel.household_id)
    if household is None:
        raise SmsActionError("NOT_FOUND", "Household not found", status_code=404)

    # Dismiss first: of two concurrent resends only the one that wins the dismissal creates a copy.
    if not await dismiss_sms_record(session, original.id, dismissed_by=requested_by, now=now):
        raise SmsActionError("INVALID_ACTION", "SMS has been dismissed")
    try:
        new_id = await create_sms_record(
            session,
            CreateSmsData(
                intent=original.intent,
                parcel_id=original.parcel_id,
                household_id=parcel.household_id,
                to_e164=normalize_phone_to_e164(household.phone_number, get_settings().sms_default_country_code),
                text=original.text,
                idempotency_key=build_resend_idempotency_key(intent=original.intent, parcel_id=original.parcel_id),
            ),
        )
    except Exception:
        await restore_sms_record(session, original.id)
        raise
    logger.info("sms resend queued original=%s new=%s by=%s", original.id, new_id, requested_by)
    return new_id
