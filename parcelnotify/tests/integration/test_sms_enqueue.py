from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from parcelnotify.domain.models import OutgoingSms
from parcelnotify.persistence.db import SessionLocal
from parcelnotify.services.notifications.enqueue import (
    calculate_sms_schedule_time,
    enqueue_pickup_reminders,
    queue_enrolment_sms,
    queue_pickup_cancelled_sms,
    queue_pickup_updated_sms,
    queue_sms_for_new_parcels,
)
from parcelnotify.tests.utils.factories import (
    create_household,
    create_parcel,
    insert_sms,
    load_sms,
    utc_now,
)


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_schedule_time_is_lead_time_before_distant_pickups() -> None:
    pickup = NOW + timedelta(days=5)
    assert calculate_sms_schedule_time(pickup, now=NOW) == pickup - timedelta(hours=48)


def test_schedule_time_uses_grace_period_for_close_pickups() -> None:
    assert calculate_sms_schedule_time(NOW + timedelta(hours=20), now=NOW) == NOW + timedelta(minutes=5)
    assert calculate_sms_schedule_time(NOW + timedelta(hours=48), now=NOW) == NOW + timedelta(minutes=5)


async def _all_sms() -> list[OutgoingSms]:
    async with SessionLocal() as session:
        return list((await session.execute(select(OutgoingSms))).scalars().all())


@pytest.mark.asyncio
async def test_new_parcels_get_scheduled_reminders() -> None:
    household = await create_household()
    distant = await create_parcel(household_id=household.id, pickup_in=timedelta(days=4))
    near = await create_parcel(household_id=household.id, pickup_in=timedelta(hours=5))
    now = utc_now()
    async with SessionLocal() as session:
        ids = await queue_sms_for_new_parcels(session, [distant.id, near.id, "parcel-unknown"], now=now)
    assert len(ids) == 2
    by_parcel = {row.parcel_id: row for row in await _all_sms()}
    assert by_parcel[distant.id].next_attempt_at == distant.pickup_date_time_earliest - timedelta(hours=48)
    assert by_parcel[near.id].next_attempt_at == now + timedelta(minutes=5)
    assert by_parcel[near.id].to_e164 == "+46701234567"
    assert by_parcel[near.id].intent == "pickup_reminder"


@pytest.mark.asyncio
async def test_jit_scan_creates_missing_reminders_once() -> None:
    household = await create_household()
    upcoming = await create_parcel(household_id=household.id, pickup_in=timedelta(hours=30))
    await create_parcel(household_id=household.id, pickup_in=timedelta(hours=72))
    await create_parcel(household_id=household.id, pickup_in=timedelta(hours=10), is_picked_up=True)
    await create_parcel(household_id=household.id, pickup_in=timedelta(hours=10), deleted_at=utc_now())
    anonymized = await create_household(anonymized_at=utc_now())
    await create_parcel(household_id=anonymized.id, pickup_in=timedelta(hours=10))

    async with SessionLocal() as session:
        assert await enqueue_pickup_reminders(session) == 1
        assert await enqueue_pickup_reminders(session) == 0
    rows = await _all_sms()
    assert [row.parcel_id for row in rows] == [upcoming.id]
    assert rows[0].status == "queued"


@pytest.mark.asyncio
async def test_jit_scan_skips_parcels_with_existing_reminder() -> None:
    household = await create_household()
    parcel = await create_parcel(household_id=household.id, pickup_in=timedelta(hours=30))
    await insert_sms(parcel_id=parcel.id, household_id=household.id, status="sent", sent_at=utc_now())
    async with SessionLocal() as session:
        assert await enqueue_pickup_reminders(session) == 0


@pytest.mark.asyncio
async def test_update_sms_is_deduplicated_per_parcel() -> None:
    household = await create_household(locale="de")
    parcel = await create_parcel(household_id=household.id)
    async with SessionLocal() as session:
        first = await queue_pickup_updated_sms(session, parcel.id)
        second = await queue_pickup_updated_sms(session, parcel.id)
    assert first is not None and first == second
    row = await load_sms(first)
    assert row.text.startswith("Update! Essen ")


@pytest.mark.asyncio
async def test_cancellation_only_for_notified_households() -> None:
    household = await create_household()
    silent = await create_parcel(household_id=household.id)
    notified = await create_parcel(household_id=household.id)
    await insert_sms(parcel_id=notified.id, household_id=household.id, status="sent", sent_at=utc_now())
    async with SessionLocal() as session:
        assert await queue_pickup_cancelled_sms(session, silent.id) is None
        sms_id = await queue_pickup_cancelled_sms(session, notified.id)
    assert sms_id is not None
    assert (await load_sms(sms_id)).intent == "pickup_cancelled"


@pytest.mark.asyncio
async def test_enrolment_keys_on_phone_number() -> None:
    household = await create_household(locale="sv")
    async with SessionLocal() as session:
        first = await queue_enrolment_sms(session, household.id)
        again = await queue_enrolment_sms(session, household.id)
    assert first is not None and first == again
    row = await load_sms(first)
    assert row.parcel_id is None
    assert row.idempotency_key == f"consent_enrolment|{household.id}|+46701234567"
    assert row.text.startswith("Välkommen!")


@pytest.mark.asyncio
async def test_jit_scan_survives_key_collision_mid_scan() -> None:
    household = await create_household()
    first = await create_parcel(household_id=household.id, pickup_in=timedelta(hours=10))
    second = await create_parcel(household_id=household.id, pickup_in=timedelta(hours=11))
    # Holds the first parcel's reminder key without matching the scan's reminder filter.
    await insert_sms(
        intent="pickup_updated",
        parcel_id=first.id,
        household_id=household.id,
        idempotency_key=f"pickup_reminder|{first.id}",
    )

    async with SessionLocal() as session:
        await enqueue_pickup_reminders(session)

    reminders = [row for row in await _all_sms() if row.intent == "pickup_reminder"]
    assert [row.parcel_id for row in reminders] == [second.id]


@pytest.mark.asyncio
async def test_concurrent_jit_scans_create_each_reminder_once() -> None:
    household = await create_household()
    parcels = [
        await create_parcel(household_id=household.id, pickup_in=timedelta(hours=hours))
        for hours in (10, 11, 12, 13)
    ]

    async def _scan() -> int:
        async with SessionLocal() as session:
            return await enqueue_pickup_reminders(session)

    await asyncio.gather(_scan(), _scan())

    rows = await _all_sms()
    assert sorted(row.parcel_id for row in rows) == sorted(parcel.id for parcel in parcels)
    assert {row.intent for row in rows} == {"pickup_reminder"}
