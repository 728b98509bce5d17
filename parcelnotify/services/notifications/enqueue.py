from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Iterable

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.config import get_settings
from parcelnotify.domain.intents import (
    CONSENT_ENROLMENT,
    PICKUP_CANCELLED,
    PICKUP_REMINDER,
    PICKUP_UPDATED,
    get_intent_policy,
)
from parcelnotify.domain.models import FoodParcel, Household, OutgoingSms
from parcelnotify.persistence.repos.outgoing_sms import CreateSmsData, create_sms_record
from parcelnotify.services.notifications.phone import normalize_phone_to_e164
from parcelnotify.services.notifications.templates import SmsTemplateData, parcel_public_url, render_sms


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_sms_schedule_time(pickup_time: datetime, *, now: datetime | None = None) -> datetime:
    """Return when the reminder for a pickup at ``pickup_time`` should go out.

    Pickups further away than the reminder lead time get their reminder exactly that
    long before pickup. Closer pickups are reminded after a short grace period so
    staff can still correct a freshly created parcel.
    """
    settings = get_settings()
    now = now or _utc_now()
    lead = timedelta(hours=settings.sms_reminder_hours_before_pickup)
    if pickup_time - now > lead:
        return pickup_time - lead
    return now + timedelta(minutes=settings.sms_grace_period_minutes)


def _render_for_parcel(intent: str, parcel: FoodParcel, household: Household) -> str:
    policy = get_intent_policy(intent)
    template = policy.template if policy is not None else "reminder"
    return render_sms(
        template,
        household.locale or get_settings().sms_default_locale,
        SmsTemplateData(
            pickup_date=parcel.pickup_date_time_earliest,
            public_url=parcel_public_url(parcel.id),
        ),
    )


async def _queue_parcel_sms(
    session: AsyncSession,
    *,
    intent: str,
    parcel: FoodParcel,
    household: Household,
    next_attempt_at: datetime | None = None,
) -> str | None:
    if not household.phone_number:
        logger.warning("skipping %s for parcel %s: household has no phone number", intent, parcel.id)
        return None
    return await create_sms_record(
        session,
        CreateSmsData(
            intent=intent,
            parcel_id=parcel.id,
            household_id=household.id,
            to_e164=normalize_phone_to_e164(household.phone_number, get_settings().sms_default_country_code),
            text=_render_for_parcel(intent, parcel, household),
            next_attempt_at=next_attempt_at,
        ),
    )


async def _load_parcel(session: AsyncSession, parcel_id: str) -> tuple[FoodParcel, Household] | None:
    row = (
        await session.execute(
            select(FoodParcel, Household)
            .join(Household, Household.id == FoodParcel.household_id)
            .where(FoodParcel.id == parcel_id)
        )
    ).first()
    if row is None:
        return None
    return row[0], row[1]


async def queue_sms_for_new_parcels(
    session: AsyncSession,
    parcel_ids: Iterable[str],
    *,
    now: datetime | None = None,
) -> list[str]:
    # Reminders are scheduled up front; the send-time re-check handles later edits.
    now = now or _utc_now()
    queued: list[str] = []
    for parcel_id in parcel_ids:
        loaded = await _load_parcel(session, parcel_id)
        if loaded is None:
            logger.warning("skipping reminder for unknown parcel %s", parcel_id)
            continue
        parcel, household = loaded
        if household.anonymized_at is not None or parcel.deleted_at is not None:
            continue
        sms_id = await _queue_parcel_sms(
            session,
            intent=PICKUP_REMINDER,
            parcel=parcel,
            household=household,
            next_attempt_at=calculate_sms_schedule_time(parcel.pickup_date_time_earliest, now=now),
        )
        if sms_id is not None:
            queued.append(sms_id)
    logger.info("queued %s reminder sms for new parcels", len(queued))
    return queued


async def enqueue_pickup_reminders(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Create due reminders for upcoming parcels that do not have one yet.

    This is the JIT source: records are created due immediately and rendered again
    when claimed. Parcels whose reminder was created at parcel creation time are
    skipped, and the idempotency key absorbs any overlap with concurrent scans.
    """
    settings = get_settings()
    now = now or _utc_now()
    horizon = now + timedelta(hours=settings.sms_reminder_hours_before_pickup)
    has_reminder = exists().where(
        and_(OutgoingSms.parcel_id == FoodParcel.id, OutgoingSms.intent == PICKUP_REMINDER)
    )
    rows = (
        await session.execute(
            select(FoodParcel, Household)
            .join(Household, Household.id == FoodParcel.household_id)
            .where(
                FoodParcel.pickup_date_time_earliest > now,
                FoodParcel.pickup_date_time_earliest <= horizon,
                FoodParcel.is_picked_up.is_(False),
                FoodParcel.deleted_at.is_(None),
                Household.anonymized_at.is_(None),
                ~has_reminder,
            )
            .order_by(FoodParcel.pickup_date_time_earliest.asc())
        )
    ).all()
    created = 0
    for parcel, household in rows:
        sms_id = await _queue_parcel_sms(session, intent=PICKUP_REMINDER, parcel=parcel, household=household)
        if sms_id is not None:
            created += 1
    if created:
        logger.info("enqueued %s pickup reminder sms", created)
    return created


async def queue_pickup_updated_sms(session: AsyncSession, parcel_id: str) -> str | None:
    # One update message per parcel; repeated edits are folded into it by the send-time re-render.
    loaded = await _load_parcel(session, parcel_id)
    if loaded is None:
        return None
    parcel, household = loaded
    if household.anonymized_at is not None or parcel.deleted_at is not None:
        return None
    return await _queue_parcel_sms(session, intent=PICKUP_UPDATED, parcel=parcel, household=household)


async def queue_pickup_cancelled_sms(
    session: AsyncSession,
    parcel_id: str,
    *,
    now: datetime | None = None,
) -> str | None:
    """Queue a cancellation notice, but only if the household was told about the pickup.

    A parcel cancelled before any reminder or update reached the household needs no
    notice; pending reminders are cancelled by the send-time re-check instead.
    """
    now = now or _utc_now()
    loaded = await _load_parcel(session, parcel_id)
    if loaded is None:
        return None
    parcel, household = loaded
    if household.anonymized_at is not None or parcel.pickup_date_time_latest <= now:
        return None
    notified = await session.scalar(
        select(OutgoingSms.id)
        .where(
            OutgoingSms.parcel_id == parcel_id,
            OutgoingSms.intent.in_((PICKUP_REMINDER, PICKUP_UPDATED)),
            OutgoingSms.status == "sent",
        )
        .limit(1)
    )
    if notified is None:
        return None
    return await _queue_parcel_sms(session, intent=PICKUP_CANCELLED, parcel=parcel, household=household)


async def queue_enrolment_sms(session: AsyncSession, household_id: str) -> str | None:
    household = await session.get(Household, household_id)
    if household is None or household.anonymized_at is not None or not household.phone_number:
        return None
    settings = get_settings()
    text = render_sms(
        "enrolment",
        household.locale or settings.sms_default_locale,
        SmsTemplateData(pickup_date=None, public_url=settings.public_base_url.rstrip("/")),
    )
    return await create_sms_record(
        session,
        CreateSmsData(
            intent=CONSENT_ENROLMENT,
            household_id=household.id,
            to_e164=normalize_phone_to_e164(household.phone_number, settings.sms_default_country_code),
            text=text,
        ),
    )
