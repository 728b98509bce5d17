from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.config import get_settings
from parcelnotify.domain.intents import IntentPolicy
from parcelnotify.domain.models import FoodParcel, Household
from parcelnotify.services.notifications.phone import is_valid_e164, normalize_phone_to_e164
from parcelnotify.services.notifications.templates import SmsTemplateData, parcel_public_url


logger = logging.getLogger(__name__)

Renderer = Callable[[str, str, SmsTemplateData], str]


@dataclass(frozen=True)
class SubjectSnapshot:
    """Authoritative state of a parcel and its household at send time."""

    parcel_id: str
    household_id: str
    deleted: bool
    picked_up: bool
    household_anonymized: bool
    phone_number: str
    locale: str
    pickup_earliest: datetime
    pickup_latest: datetime


class SubjectDataProvider(Protocol):
    async def get_snapshot(self, parcel_id: str) -> SubjectSnapshot | None:
        ...


class ParcelDataProvider:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_snapshot(self, parcel_id: str) -> SubjectSnapshot | None:
        row = (
            await self._session.execute(
                select(FoodParcel, Household)
                .join(Household, Household.id == FoodParcel.household_id)
                .where(FoodParcel.id == parcel_id)
                .execution_options(populate_existing=True)
            )
        ).first()
        if row is None:
            return None
        parcel, household = row
        return SubjectSnapshot(
            parcel_id=parcel.id,
            household_id=household.id,
            deleted=parcel.deleted_at is not None,
            picked_up=bool(parcel.is_picked_up),
            household_anonymized=household.anonymized_at is not None,
            phone_number=household.phone_number,
            locale=household.locale or get_settings().sms_default_locale,
            pickup_earliest=parcel.pickup_date_time_earliest,
            pickup_latest=parcel.pickup_date_time_latest,
        )


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: str | None = None
    to_e164: str | None = None
    text: str | None = None
    deadline: datetime | None = None


def ineligibility_reason(
    snapshot: SubjectSnapshot | None,
    policy: IntentPolicy,
    now: datetime,
) -> str | None:
    # Ordered from most to least definitive so the recorded reason is the useful one.
    if snapshot is None:
        return "parcel not found"
    if snapshot.household_anonymized:
        return "household anonymized"
    if snapshot.deleted and policy.cancel_if_subject_deleted:
        return "parcel deleted"
    if snapshot.picked_up:
        return "parcel already picked up"
    if snapshot.pickup_latest <= now:
        return "pickup window ended"
    return None


async def recheck_and_render(
    *,
    provider: SubjectDataProvider,
    policy: IntentPolicy,
    parcel_id: str,
    now: datetime,
    renderer: Renderer,
) -> EligibilityResult:
    """Re-fetch the parcel for a claimed record and rebuild its destination and body.

    The result is ineligible when the parcel vanished, was deleted (except for the
    cancellation message), was picked up, when the household was anonymized or when
    the pickup window has already closed, or when the household phone no longer
    normalizes to a valid E.164 number.
    """
    snapshot = await provider.get_snapshot(parcel_id)
    reason = ineligibility_reason(snapshot, policy, now)
    if reason is not None or snapshot is None:
        logger.info("sms ineligible intent=%s parcel=%s reason=%s", policy.intent, parcel_id, reason)
        return EligibilityResult(eligible=False, reason=reason)

    settings = get_settings()
    to_e164 = normalize_phone_to_e164(snapshot.phone_number or "", settings.sms_default_country_code)
    if not is_valid_e164(to_e164):
        logger.info("sms ineligible intent=%s parcel=%s reason=invalid phone number", policy.intent, parcel_id)
        return EligibilityResult(eligible=False, reason="invalid phone number")
    text = renderer(
        policy.template,
        snapshot.locale,
        SmsTemplateData(pickup_date=snapshot.pickup_earliest, public_url=parcel_public_url(parcel_id)),
    )
    deadline = snapshot.pickup_latest if policy.deadline_from_subject else None
    return EligibilityResult(eligible=True, to_e164=to_e164, text=text, deadline=deadline)
