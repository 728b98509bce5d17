from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.errors import DatabaseError
from parcelnotify.domain.models import (
    SMS_READY_STATUSES,
    OutgoingSms,
    new_sms_id,
)
from parcelnotify.services.notifications.idempotency import build_idempotency_key


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CreateSmsData:
    intent: str
    household_id: str
    to_e164: str
    text: str
    parcel_id: str | None = None
    # Explicit keys are only used for operator resends; everything else derives the key.
    idempotency_key: str | None = None
    next_attempt_at: datetime | None = None


def _conditional_update(sms_id: str, *criteria: Any):
    return (
        update(OutgoingSms)
        .where(OutgoingSms.id == sms_id, *criteria)
        .execution_options(synchronize_session=False)
    )


async def create_sms_record(session: AsyncSession, data: CreateSmsData) -> str:
    """Insert a queued record, or return the id of the record already holding its key.

    Creation is safe to call redundantly from several triggers: the unique index on
    ``idempotency_key`` decides the winner and losers resolve to the winner's id.
    """
    # Derive the key even when one is supplied so subject validation always runs.
    derived_key = build_idempotency_key(
        intent=data.intent,
        household_id=data.household_id,
        parcel_id=data.parcel_id,
        to_e164=data.to_e164,
    )
    idempotency_key = data.idempotency_key or derived_key
    now = _utc_now()
    sms_id = new_sms_id()
    # Race-safe insert: a key collision is skipped instead of raised, so the caller's
    # session is never rolled back and objects it already loaded stay usable.
    insert = pg_insert if session.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = (
        insert(OutgoingSms)
        .values(
            id=sms_id,
            intent=data.intent,
            parcel_id=data.parcel_id,
            household_id=data.household_id,
            to_e164=data.to_e164,
            text=data.text,
            status="queued",
            attempt_count=0,
            next_attempt_at=data.next_attempt_at or now,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[OutgoingSms.idempotency_key])
    )
    result = await session.execute(stmt)
    await session.commit()
    if int(result.rowcount or 0) == 1:
        logger.info("sms queued intent=%s household=%s id=%s", data.intent, data.household_id, sms_id)
        return sms_id
    existing_id = await session.scalar(
        select(OutgoingSms.id).where(OutgoingSms.idempotency_key == idempotency_key)
    )
    if existing_id is None:
        raise DatabaseError(f"sms insert skipped but no record holds key {idempotency_key}")
    logger.info("sms already queued for key %s; returning %s", idempotency_key, existing_id)
    return str(existing_id)


async def get_sms_record(session: AsyncSession, sms_id: str) -> OutgoingSms | None:
    # Always reload so bulk conditional updates are visible to the caller.
    return await session.scalar(
        select(OutgoingSms).where(OutgoingSms.id == sms_id).execution_options(populate_existing=True)
    )


async def fetch_ready_sms(
    session: AsyncSession,
    *,
    limit: int,
    now: datetime | None = None,
) -> list[OutgoingSms]:
    # Oldest-due first; the insertion sequence keeps equal due times deterministic.
    now = now or _utc_now()
    rows = (
        await session.execute(
            select(OutgoingSms)
            .where(
                OutgoingSms.status.in_(SMS_READY_STATUSES),
                OutgoingSms.next_attempt_at <= now,
            )
            .order_by(OutgoingSms.next_attempt_at.asc(), OutgoingSms.seq.asc())
            .limit(max(0, int(limit)))
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def claim_sms_record(
    session: AsyncSession,
    sms_id: str,
    *,
    now: datetime | None = None,
) -> bool:
    """Atomically move a due record into ``sending``.

    Only one concurrent caller can match the ready-and-due predicate, so a ``False``
    result means another worker holds the record or it is not due yet.
    """
    now = now or _utc_now()
    result = await session.execute(
        _conditional_update(
            sms_id,
            OutgoingSms.status.in_(SMS_READY_STATUSES),
            OutgoingSms.next_attempt_at <= now,
        ).values(status="sending", claimed_at=now, updated_at=now)
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def release_sms_claim(
    session: AsyncSession,
    sms_id: str,
    *,
    status: str,
    now: datetime | None = None,
) -> bool:
    # Hand a claimed record back untouched; used when the attempt never reached the gateway.
    if status not in SMS_READY_STATUSES:
        raise ValueError(f"cannot release claim into status '{status}'")
    now = now or _utc_now()
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.status == "sending").values(
            status=status,
            claimed_at=None,
            updated_at=now,
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def refresh_sms_content(
    session: AsyncSession,
    sms_id: str,
    *,
    to_e164: str,
    text: str,
    now: datetime | None = None,
) -> bool:
    # Persist re-rendered content before the send so a crash leaves accurate audit data.
    now = now or _utc_now()
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.status == "sending").values(
            to_e164=to_e164,
            text=text,
            updated_at=now,
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def mark_sms_sent(
    session: AsyncSession,
    sms_id: str,
    *,
    provider_message_id: str,
    now: datetime | None = None,
) -> bool:
    now = now or _utc_now()
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.status == "sending").values(
            status="sent",
            sent_at=now,
            provider_message_id=provider_message_id,
            last_error_message=None,
            attempt_count=OutgoingSms.attempt_count + 1,
            updated_at=now,
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def mark_sms_retrying(
    session: AsyncSession,
    sms_id: str,
    *,
    error_message: str,
    next_attempt_at: datetime,
    now: datetime | None = None,
) -> bool:
    now = now or _utc_now()
    if next_attempt_at <= now:
        raise ValueError("next_attempt_at must be in the future")
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.status == "sending").values(
            status="retrying",
            last_error_message=error_message,
            next_attempt_at=next_attempt_at,
            attempt_count=OutgoingSms.attempt_count + 1,
            updated_at=now,
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def mark_sms_failed(
    session: AsyncSession,
    sms_id: str,
    *,
    error_message: str,
    now: datetime | None = None,
) -> bool:
    now = now or _utc_now()
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.status == "sending").values(
            status="failed",
            last_error_message=error_message,
            next_attempt_at=None,
            attempt_count=OutgoingSms.attempt_count + 1,
            updated_at=now,
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def mark_sms_cancelled(
    session: AsyncSession,
    sms_id: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> bool:
    # Cancellation consumes the claim without counting as an attempt.
    now = now or _utc_now()
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.status == "sending").values(
            status="cancelled",
            last_error_message=reason,
            next_attempt_at=None,
            updated_at=now,
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def reset_stale_sending(
    session: AsyncSession,
    *,
    intents: Iterable[str],
    cutoff: datetime,
    now: datetime | None = None,
) -> list[str]:
    # Re-queue records orphaned mid-send; the key stays so JIT scans cannot add a second row.
    now = now or _utc_now()
    intent_list = sorted(set(intents))
    if not intent_list:
        return []
    stale_ids = (
        await session.execute(
            select(OutgoingSms.id).where(
                OutgoingSms.status == "sending",
                OutgoingSms.intent.in_(intent_list),
                or_(
                    OutgoingSms.claimed_at < cutoff,
                    and_(OutgoingSms.claimed_at.is_(None), OutgoingSms.created_at < cutoff),
                ),
            )
        )
    ).scalars().all()
    recovered: list[str] = []
    for sms_id in stale_ids:
        # Re-check the predicate per row so a worker finishing concurrently is not clobbered.
        result = await session.execute(
            _conditional_update(
                sms_id,
                OutgoingSms.status == "sending",
                or_(
                    OutgoingSms.claimed_at < cutoff,
                    and_(OutgoingSms.claimed_at.is_(None), OutgoingSms.created_at < cutoff),
                ),
            ).values(
                status="queued",
                next_attempt_at=now,
                claimed_at=None,
                last_error_message="Recovered from stale sending state",
                updated_at=now,
            )
        )
        if int(result.rowcount or 0) == 1:
            recovered.append(str(sms_id))
    await session.commit()
    return recovered


def stuck_sending_criteria(*, excluded_intents: Iterable[str], cutoff: datetime) -> list[Any]:
    # Stale records the sweep refuses to touch; operators must resolve them by hand.
    criteria: list[Any] = [
        OutgoingSms.status == "sending",
        or_(
            OutgoingSms.claimed_at < cutoff,
            and_(OutgoingSms.claimed_at.is_(None), OutgoingSms.created_at < cutoff),
        ),
    ]
    excluded = sorted(set(excluded_intents))
    if excluded:
        criteria.append(OutgoingSms.intent.not_in(excluded))
    return criteria


async def count_stuck_sending(
    session: AsyncSession,
    *,
    excluded_intents: Iterable[str],
    cutoff: datetime,
) -> int:
    query = (
        select(func.count())
        .select_from(OutgoingSms)
        .where(*stuck_sending_criteria(excluded_intents=excluded_intents, cutoff=cutoff))
    )
    return int((await session.scalar(query)) or 0)


async def update_provider_status(
    session: AsyncSession,
    *,
    provider_message_id: str,
    provider_status: str,
    now: datetime | None = None,
) -> bool:
    # Gateway callbacks only ever annotate records that actually left as sent.
    now = now or _utc_now()
    result = await session.execute(
        update(OutgoingSms)
        .where(
            OutgoingSms.provider_message_id == provider_message_id,
            OutgoingSms.status == "sent",
        )
        .values(
            provider_status=provider_status,
            provider_status_updated_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0) > 0


async def dismiss_sms_record(
    session: AsyncSession,
    sms_id: str,
    *,
    dismissed_by: str,
    now: datetime | None = None,
) -> bool:
    # Conditional on not yet dismissed so double-clicks resolve to a single winner.
    now = now or _utc_now()
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.dismissed_at.is_(None)).values(
            dismissed_at=now,
            dismissed_by=dismissed_by,
            updated_at=now,
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def restore_sms_record(session: AsyncSession, sms_id: str) -> bool:
    result = await session.execute(
        _conditional_update(sms_id, OutgoingSms.dismissed_at.is_not(None)).values(
            dismissed_at=None,
            dismissed_by=None,
            updated_at=_utc_now(),
        )
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def list_sms_for_parcel(session: AsyncSession, parcel_id: str) -> list[OutgoingSms]:
    rows = (
        await session.execute(
            select(OutgoingSms)
            .where(OutgoingSms.parcel_id == parcel_id)
            .order_by(OutgoingSms.created_at.desc(), OutgoingSms.seq.desc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def has_recent_sms_for_parcel(
    session: AsyncSession,
    *,
    parcel_id: str,
    since: datetime,
    exclude_id: str | None = None,
) -> bool:
    query = select(OutgoingSms.id).where(
        OutgoingSms.parcel_id == parcel_id,
        OutgoingSms.created_at >= since,
    )
    if exclude_id:
        query = query.where(OutgoingSms.id != exclude_id)
    return (await session.scalar(query.limit(1))) is not None


async def list_failed_sms(
    session: AsyncSession,
    *,
    stale_before: datetime,
    stuck_before: datetime,
    recovery_intents: Iterable[str] = (),
    limit: int = 100,
) -> list[OutgoingSms]:
    # Everything an operator should look at: internal failures, provider failures, unconfirmed
    # sends and sending records the sweep will never recover.
    rows = (
        await session.execute(
            select(OutgoingSms)
            .where(
                OutgoingSms.dismissed_at.is_(None),
                or_(
                    OutgoingSms.status == "failed",
                    and_(
                        OutgoingSms.status == "sent",
                        OutgoingSms.provider_status.in_(("failed", "not delivered")),
                    ),
                    and_(
                        OutgoingSms.status == "sent",
                        OutgoingSms.provider_status.is_(None),
                        OutgoingSms.sent_at < stale_before,
                    ),
                    and_(*stuck_sending_criteria(excluded_intents=recovery_intents, cutoff=stuck_before)),
                ),
            )
            .order_by(OutgoingSms.created_at.desc())
            .limit(max(1, min(int(limit), 500)))
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)
