from __future__ import annotations

from datetime import timedelta

import pytest

from parcelnotify.core.errors import SmsActionError, SmsRecordNotFoundError
from parcelnotify.persistence.db import SessionLocal
from parcelnotify.persistence.repos.outgoing_sms import list_sms_for_parcel
from parcelnotify.services.notifications.admin import (
    dismiss_sms,
    failure_kind,
    list_sms_failures,
    resend_failed_sms,
    restore_sms,
)
from parcelnotify.tests.utils.factories import create_household, create_parcel, insert_sms, load_sms, utc_now


async def _failed_reminder(*, pickup_in: timedelta = timedelta(hours=30), **overrides):
    household = await create_household(phone_number="0709876543")
    parcel = await create_parcel(household_id=household.id, pickup_in=pickup_in)
    values = {
        "parcel_id": parcel.id,
        "household_id": household.id,
        "status": "failed",
        "attempt_count": 3,
        "next_attempt_at": None,
        "created_at": utc_now() - timedelta(minutes=30),
        "last_error_message": "Service unavailable",
    }
    values.update(overrides)
    return await insert_sms(**values), parcel


@pytest.mark.asyncio
async def test_resend_creates_fresh_record_and_dismisses_original() -> None:
    original, parcel = await _failed_reminder()
    async with SessionLocal() as session:
        new_id = await resend_failed_sms(session, original.id, requested_by="ops@example.org")
        history = await list_sms_for_parcel(session, parcel.id)

    assert new_id != original.id
    fresh = await load_sms(new_id)
    assert fresh.status == "queued"
    assert fresh.attempt_count == 0
    assert fresh.to_e164 == "+46709876543"
    assert fresh.idempotency_key.startswith(f"pickup_reminder|{parcel.id}|retry|")
    dismissed = await load_sms(original.id)
    assert dismissed.dismissed_by == "ops@example.org"
    assert {row.id for row in history} == {original.id, new_id}


@pytest.mark.asyncio
async def test_resend_accepts_provider_failures_and_stale_sends() -> None:
    provider_failed, _ = await _failed_reminder(status="sent", sent_at=utc_now(), provider_status="not delivered")
    stale, _ = await _failed_reminder(status="sent", sent_at=utc_now() - timedelta(hours=25))
    async with SessionLocal() as session:
        assert await resend_failed_sms(session, provider_failed.id, requested_by="ops")
        assert await resend_failed_sms(session, stale.id, requested_by="ops")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"status": "sent", "sent_at": None, "provider_status": "delivered"}, "INVALID_ACTION"),
        ({"status": "queued"}, "INVALID_ACTION"),
        ({"intent": "consent_enrolment", "idempotency_key": "consent_enrolment|x|+46"}, "INVALID_ACTION"),
    ],
)
async def test_resend_rejects_ineligible_records(overrides: dict, code: str) -> None:
    original, _ = await _failed_reminder(**overrides)
    async with SessionLocal() as session:
        with pytest.raises(SmsActionError) as exc_info:
            await resend_failed_sms(session, original.id, requested_by="ops")
    assert exc_info.value.code == code


@pytest.mark.asyncio
async def test_resend_rejects_pickups_within_an_hour() -> None:
    original, _ = await _failed_reminder(pickup_in=timedelta(minutes=50))
    async with SessionLocal() as session:
        with pytest.raises(SmsActionError) as exc_info:
            await resend_failed_sms(session, original.id, requested_by="ops")
    assert exc_info.value.code == "TOO_LATE"


@pytest.mark.asyncio
async def test_resend_enforces_per_parcel_cooldown() -> None:
    original, parcel = await _failed_reminder()
    await insert_sms(
        intent="pickup_updated",
        parcel_id=parcel.id,
        household_id=original.household_id,
        created_at=utc_now() - timedelta(minutes=2),
    )
    async with SessionLocal() as session:
        with pytest.raises(SmsActionError) as exc_info:
            await resend_failed_sms(session, original.id, requested_by="ops")
    assert exc_info.value.code == "COOLDOWN_ACTIVE"
    assert exc_info.value.status_code == 429
    assert (await load_sms(original.id)).dismissed_at is None


@pytest.mark.asyncio
async def test_double_resend_yields_one_copy() -> None:
    original, parcel = await _failed_reminder()
    async with SessionLocal() as session:
        await resend_failed_sms(session, original.id, requested_by="ops")
        with pytest.raises(SmsActionError):
            await resend_failed_sms(session, original.id, requested_by="ops")
        history = await list_sms_for_parcel(session, parcel.id)
    assert len(history) == 2


@pytest.mark.asyncio
async def test_dismiss_hides_failure_and_restore_brings_it_back() -> None:
    original, _ = await _failed_reminder()
    async with SessionLocal() as session:
        assert [row.id for row in await list_sms_failures(session)] == [original.id]
        dismissed = await dismiss_sms(session, original.id, dismissed_by="ops")
        assert dismissed.dismissed_at is not None
        assert await list_sms_failures(session) == []
        with pytest.raises(SmsActionError):
            await dismiss_sms(session, original.id, dismissed_by="ops")
        restored = await restore_sms(session, original.id)
        assert restored.dismissed_at is None
        with pytest.raises(SmsRecordNotFoundError):
            await dismiss_sms(session, "missing", dismissed_by="ops")


@pytest.mark.asyncio
async def test_stuck_enrolment_is_listed_for_review_but_not_resendable() -> None:
    now = utc_now()
    stuck = await insert_sms(
        intent="consent_enrolment",
        parcel_id=None,
        idempotency_key="consent_enrolment|hh-1|+46701234567",
        status="sending",
        claimed_at=now - timedelta(hours=1),
    )
    # A recoverable reminder is left to the sweep.
    await insert_sms(status="sending", claimed_at=now - timedelta(hours=1))
    async with SessionLocal() as session:
        failures = await list_sms_failures(session, now=now)
        assert [(row.id, failure_kind(row, now=now)) for row in failures] == [(stuck.id, "stuck")]
        with pytest.raises(SmsActionError) as excinfo:
            await resend_failed_sms(session, stuck.id, requested_by="ops@example.org", now=now)
        assert excinfo.value.code == "INVALID_ACTION"
        await dismiss_sms(session, stuck.id, dismissed_by="ops@example.org")
        assert await list_sms_failures(session, now=now) == []
