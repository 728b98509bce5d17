from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.apps.api.deps import AdminPrincipal, get_db, get_scheduler, require_admin
from parcelnotify.apps.api.response import SuccessEnvelope, success_response
from parcelnotify.core.errors import SmsRecordNotFoundError
from parcelnotify.persistence.repos.outgoing_sms import get_sms_record, list_sms_for_parcel
from parcelnotify.services.notifications.admin import (
    dismiss_sms,
    failure_kind,
    list_sms_failures,
    resend_failed_sms,
    restore_sms,
)
from parcelnotify.services.notifications.health import compute_health_stats
from parcelnotify.services.scheduler import SmsScheduler

router = APIRouter(prefix="/v1/admin/sms", tags=["sms-admin"], dependencies=[Depends(require_admin)])


class SmsRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    intent: str
    parcel_id: str | None
    household_id: str
    to_e164: str
    text: str
    status: str
    attempt_count: int
    next_attempt_at: datetime | None
    last_error_message: str | None
    provider_message_id: str | None
    provider_status: str | None
    provider_status_updated_at: datetime | None
    sent_at: datetime | None
    dismissed_at: datetime | None
    dismissed_by: str | None
    created_at: datetime


class SmsFailureOut(SmsRecordOut):
    failure_kind: str | None = None


class HealthStatsOut(BaseModel):
    sent: int
    delivered: int
    provider_failed: int
    not_delivered: int
    awaiting: int
    internal_failed: int
    stale_unconfirmed: int
    stuck_sending: int
    has_issues: bool


class DispatchSummaryOut(BaseModel):
    status: str
    recovered: int = 0
    stuck: int = 0
    enqueued: int = 0
    processed: int = 0
    attempted: int = 0
    cancelled: int = 0
    skipped: int = 0


class ResendOut(BaseModel):
    original_id: str
    new_id: str


@router.post("/dispatch", response_model=SuccessEnvelope[DispatchSummaryOut])
async def trigger_dispatch(
    request: Request,
    scheduler: SmsScheduler = Depends(get_scheduler),
) -> dict:
    # Overlaps with a running cycle report skipped_busy instead of waiting.
    summary = await scheduler.trigger_dispatch()
    return success_response(request=request, data=DispatchSummaryOut(**summary))


@router.get("/health", response_model=SuccessEnvelope[HealthStatsOut])
async def health_stats(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    stats = await compute_health_stats(db)
    return success_response(request=request, data=HealthStatsOut(**stats.as_dict()))


@router.post("/health/report", response_model=SuccessEnvelope[HealthStatsOut])
async def send_health_report(
    request: Request,
    scheduler: SmsScheduler = Depends(get_scheduler),
) -> dict:
    stats = await scheduler.trigger_health_report()
    return success_response(request=request, data=HealthStatsOut(**stats.as_dict()))


@router.get("/failures", response_model=SuccessEnvelope[list[SmsFailureOut]])
async def list_failures(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    now = datetime.now(timezone.utc)
    rows = await list_sms_failures(db, limit=limit, now=now)
    data = [
        SmsFailureOut.model_validate(row).model_copy(update={"failure_kind": failure_kind(row, now=now)})
        for row in rows
    ]
    return success_response(request=request, data=[item.model_dump(mode="json") for item in data])


@router.get("/parcels/{parcel_id}", response_model=SuccessEnvelope[list[SmsRecordOut]])
async def parcel_history(parcel_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    rows = await list_sms_for_parcel(db, parcel_id)
    return success_response(
        request=request,
        data=[SmsRecordOut.model_validate(row).model_dump(mode="json") for row in rows],
    )


@router.get("/{sms_id}", response_model=SuccessEnvelope[SmsRecordOut])
async def get_sms(sms_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    record = await get_sms_record(db, sms_id)
    if record is None:
        raise SmsRecordNotFoundError(sms_id)
    return success_response(request=request, data=SmsRecordOut.model_validate(record))


@router.post("/{sms_id}/dismiss", response_model=SuccessEnvelope[SmsRecordOut])
async def dismiss(
    sms_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await dismiss_sms(db, sms_id, dismissed_by=principal.operator)
    return success_response(request=request, data=SmsRecordOut.model_validate(record))


@router.post("/{sms_id}/restore", response_model=SuccessEnvelope[SmsRecordOut])
async def restore(sms_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    record = await restore_sms(db, sms_id)
    return success_response(request=request, data=SmsRecordOut.model_validate(record))


@router.post("/{sms_id}/resend", response_model=SuccessEnvelope[ResendOut])
async def resend(
    sms_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    new_id = await resend_failed_sms(db, sms_id, requested_by=principal.operator)
    return success_response(request=request, data=ResendOut(original_id=sms_id, new_id=new_id))
