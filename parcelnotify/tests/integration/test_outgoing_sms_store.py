from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from parcelnotify.core.errors import MissingSubjectError
from parcelnotify.domain.models import OutgoingSms
from parcelnotify.persistence.db import SessionLocal
from parcelnotify.persistence.repos.outgoing_sms import (
    CreateSmsData,
    claim_sms_record,
    create_sms_record,
    fetch_ready_sms,
    get_sms_record,
    mark_sms_cancelled,
    mark_sms_failed,
    mark_sms_retrying,
    mark_sms_sent,
    update_provider_status,
)
from parcelnotify.tests.utils.factories import insert_sms, load_sms, utc_now


def _reminder(parcel_id: str = "parcel-1", **overrides) -> CreateSmsData:
    values = {
        "intent": "pickup_reminder",
        "parcel_id": parcel_id,
        "household_id": "hh-1",
        "to_e164": "+46701234567",
        "text": "Matpaket",
    }
    values.update(overrides)
    return CreateSmsData(**values)


@pytest.mark.asyncio
async def test_create_is_idempotent_per_key() -> None:
    async with SessionLocal() as session:
        first = await create_sms_record(session, _reminder())
        second = await create_sms_record(session, _reminder(text="different text"))
        count = await session.scalar(select(func.count()).select_from(OutgoingSms))
    assert first == second
    assert count == 1
    row = await load_sms(first)
    assert row.status == "queued"
    assert row.attempt_count == 0
    assert row.text == "Matpaket"


@pytest.mark.asyncio
async def test_concurrent_creates_resolve_to_one_record() -> None:
    async def _create() -> str:
        async with SessionLocal() as session:
            return await create_sms_record(session, _reminder())

    ids = await asyncio.gather(*(_create() for _ in range(4)))
    assert len(set(ids)) == 1


@pytest.mark.asyncio
async def test_subject_bound_record_without_parcel_is_never_persisted() -> None:
    async with SessionLocal() as session:
        with pytest.raises(MissingSubjectError):
            await create_sms_record(session, _reminder(parcel_id=None))
        count = await session.scalar(select(func.count()).select_from(OutgoingSms))
    assert count == 0


@pytest.mark.asyncio
async def test_fetch_ready_orders_by_due_time_then_insertion() -> None:
    now = utc_now()
    later = await insert_sms(next_attempt_at=now - timedelta(minutes=1))
    first_equal = await insert_sms(next_attempt_at=now - timedelta(minutes=5))
    second_equal = await insert_sms(next_attempt_at=now - timedelta(minutes=5), status="retrying")
    await insert_sms(next_attempt_at=now + timedelta(minutes=5))
    await insert_sms(status="sent", next_attempt_at=now - timedelta(hours=1))
    async with SessionLocal() as session:
        ready = await fetch_ready_sms(session, limit=10, now=now)
    assert [row.id for row in ready] == [first_equal.id, second_equal.id, later.id]


@pytest.mark.asyncio
async def test_claim_is_exclusive_under_concurrency() -> None:
    row = await insert_sms(next_attempt_at=utc_now() - timedelta(seconds=1))

    async def _claim() -> bool:
        async with SessionLocal() as session:
            return await claim_sms_record(session, row.id)

    results = await asyncio.gather(*(_claim() for _ in range(5)))
    assert results.count(True) == 1
    assert (await load_sms(row.id)).status == "sending"


@pytest.mark.asyncio
async def test_claim_round_trip() -> None:
    row = await insert_sms(next_attempt_at=utc_now() - timedelta(seconds=1))
    async with SessionLocal() as session:
        assert await claim_sms_record(session, row.id)
        assert not await claim_sms_record(session, row.id)
        claimed = await get_sms_record(session, row.id)
    assert claimed is not None
    assert claimed.status == "sending"
    assert claimed.claimed_at is not None


@pytest.mark.asyncio
async def test_claim_ignores_records_not_yet_due() -> None:
    row = await insert_sms(next_attempt_at=utc_now() + timedelta(minutes=10))
    async with SessionLocal() as session:
        assert not await claim_sms_record(session, row.id)
    assert (await load_sms(row.id)).status == "queued"


@pytest.mark.asyncio
async def test_status_transitions_require_a_claim() -> None:
    row = await insert_sms()
    async with SessionLocal() as session:
        assert not await mark_sms_sent(session, row.id, provider_message_id="x")
        assert not await mark_sms_failed(session, row.id, error_message="boom")
    assert (await load_sms(row.id)).status == "queued"


@pytest.mark.asyncio
async def test_mark_transitions_update_attempts_and_fields() -> None:
    now = utc_now()
    sent = await insert_sms(status="sending", last_error_message="earlier")
    retrying = await insert_sms(status="sending")
    failed = await insert_sms(status="sending")
    cancelled = await insert_sms(status="sending")
    async with SessionLocal() as session:
        assert await mark_sms_sent(session, sent.id, provider_message_id="prov-1", now=now)
        assert await mark_sms_retrying(
            session, retrying.id, error_message="busy", next_attempt_at=now + timedelta(minutes=5), now=now
        )
        assert await mark_sms_failed(session, failed.id, error_message="bad number", now=now)
        assert await mark_sms_cancelled(session, cancelled.id, reason="parcel deleted", now=now)
        with pytest.raises(ValueError):
            await mark_sms_retrying(session, sent.id, error_message="x", next_attempt_at=now, now=now)

    sent_row = await load_sms(sent.id)
    assert (sent_row.status, sent_row.attempt_count) == ("sent", 1)
    assert sent_row.provider_message_id == "prov-1"
    assert sent_row.last_error_message is None
    assert sent_row.sent_at is not None

    retry_row = await load_sms(retrying.id)
    assert (retry_row.status, retry_row.attempt_count) == ("retrying", 1)
    assert retry_row.next_attempt_at > now

    failed_row = await load_sms(failed.id)
    assert (failed_row.status, failed_row.attempt_count) == ("failed", 1)
    assert failed_row.next_attempt_at is None

    cancelled_row = await load_sms(cancelled.id)
    assert (cancelled_row.status, cancelled_row.attempt_count) == ("cancelled", 0)


@pytest.mark.asyncio
async def test_provider_status_only_annotates_sent_records() -> None:
    sent = await insert_sms(status="sent", provider_message_id="prov-9", sent_at=utc_now())
    await insert_sms(status="failed", provider_message_id="prov-10")
    async with SessionLocal() as session:
        assert await update_provider_status(session, provider_message_id="prov-9", provider_status="delivered")
        assert not await update_provider_status(session, provider_message_id="prov-10", provider_status="delivered")
        assert not await update_provider_status(session, provider_message_id="missing", provider_status="failed")
    row = await load_sms(sent.id)
    assert row.provider_status == "delivered"
    assert row.provider_status_updated_at is not None


@pytest.mark.asyncio
async def test_key_collision_keeps_loaded_objects_usable() -> None:
    loaded = await insert_sms(intent="consent_enrolment", parcel_id=None, idempotency_key="consent|hh-1")
    async with SessionLocal() as session:
        record = await get_sms_record(session, loaded.id)
        first = await create_sms_record(session, _reminder())
        second = await create_sms_record(session, _reminder())
        # Attribute access must not trigger a lazy refresh after the duplicate insert.
        assert record.idempotency_key == "consent|hh-1"
    assert first == second


@pytest.mark.asyncio
async def test_insertion_sequence_is_assigned_by_the_database() -> None:
    async with SessionLocal() as session:
        ids = [await create_sms_record(session, _reminder(parcel_id=f"parcel-{n}")) for n in range(3)]
    rows = [await load_sms(sms_id) for sms_id in ids]
    seqs = [row.seq for row in rows]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 3


@pytest.mark.asyncio
async def test_fetch_ready_with_zero_limit_returns_nothing() -> None:
    await insert_sms(next_attempt_at=utc_now() - timedelta(minutes=1))
    async with SessionLocal() as session:
        assert await fetch_ready_sms(session, limit=0) == []
