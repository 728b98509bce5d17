from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.config import get_settings
from parcelnotify.core.errors import SmsConfigError
from parcelnotify.domain.intents import get_intent_policy
from parcelnotify.persistence.repos.outgoing_sms import (
    claim_sms_record,
    fetch_ready_sms,
    get_sms_record,
    mark_sms_cancelled,
    mark_sms_failed,
    mark_sms_retrying,
    mark_sms_sent,
    refresh_sms_content,
    release_sms_claim,
)
from parcelnotify.providers.sms.base import SendResult, SmsTransport
from parcelnotify.services.notifications.eligibility import (
    ParcelDataProvider,
    Renderer,
    SubjectDataProvider,
    recheck_and_render,
)
from parcelnotify.services.notifications.retry import EXCEPTION_STATUS_CODE, decide_after_failure
from parcelnotify.services.notifications.templates import render_sms


logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    NOT_CLAIMED = "not_claimed"
    CANCELLED = "cancelled"
    ATTEMPTED = "attempted"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _send(transport: SmsTransport, to_e164: str, text: str) -> SendResult:
    # Configuration problems propagate; anything else the transport raises counts as a 5xx.
    try:
        return await transport.send(to_e164, text)
    except SmsConfigError:
        raise
    except Exception as exc:  # noqa: BLE001 - transport failures feed the retry policy.
        logger.warning("sms transport raised %s: %s", type(exc).__name__, exc)
        return SendResult(
            success=False,
            error_message=str(exc) or type(exc).__name__,
            status_code=EXCEPTION_STATUS_CODE,
        )


async def process_sms_record(
    *,
    session: AsyncSession,
    sms_id: str,
    transport: SmsTransport,
    provider: SubjectDataProvider | None = None,
    renderer: Renderer = render_sms,
    now: datetime | None = None,
) -> DispatchOutcome:
    """Claim, re-check, send and record the outcome for one ready record.

    Returns ``NOT_CLAIMED`` when another worker won the claim or the record is not
    due, ``CANCELLED`` when the send-time re-check found the message obsolete and
    ``ATTEMPTED`` once the transport was called and the result persisted.
    """
    claimed_at = now or _utc_now()
    if not await claim_sms_record(session, sms_id, now=claimed_at):
        return DispatchOutcome.NOT_CLAIMED
    record = await get_sms_record(session, sms_id)
    if record is None:
        return DispatchOutcome.NOT_CLAIMED

    policy = get_intent_policy(record.intent)
    to_e164 = record.to_e164
    text = record.text
    deadline = None
    if policy is not None and policy.jit and record.parcel_id:
        eligibility = await recheck_and_render(
            provider=provider or ParcelDataProvider(session),
            policy=policy,
            parcel_id=record.parcel_id,
            now=claimed_at,
            renderer=renderer,
        )
        if not eligibility.eligible:
            await mark_sms_cancelled(session, sms_id, reason=eligibility.reason, now=claimed_at)
            logger.info("sms cancelled id=%s reason=%s", sms_id, eligibility.reason)
            return DispatchOutcome.CANCELLED
        deadline = eligibility.deadline
        if eligibility.to_e164 != to_e164 or eligibility.text != text:
            to_e164 = eligibility.to_e164 or to_e164
            text = eligibility.text or text
            await refresh_sms_content(session, sms_id, to_e164=to_e164, text=text, now=claimed_at)

    try:
        result = await _send(transport, to_e164, text)
    except SmsConfigError:
        # Hand the record back exactly as it was so the attempt is not consumed.
        previous_status = "retrying" if record.attempt_count > 0 else "queued"
        await release_sms_claim(session, sms_id, status=previous_status)
        logger.error("sms transport misconfigured; released id=%s", sms_id)
        raise

    finished_at = now or _utc_now()
    if result.success:
        await mark_sms_sent(
            session,
            sms_id,
            provider_message_id=result.provider_message_id or "unknown",
            now=finished_at,
        )
        logger.info("sms sent id=%s intent=%s provider_id=%s", sms_id, record.intent, result.provider_message_id)
        return DispatchOutcome.ATTEMPTED

    attempt_number = int(record.attempt_count) + 1
    error_message = result.error_message or (
        f"HTTP {result.status_code}" if result.status_code is not None else "Unknown error"
    )
    decision = decide_after_failure(
        attempt_number=attempt_number,
        status_code=result.status_code,
        now=finished_at,
        deadline=deadline,
    )
    if decision.retry and decision.next_attempt_at is not None:
        await mark_sms_retrying(
            session,
            sms_id,
            error_message=error_message,
            next_attempt_at=decision.next_attempt_at,
            now=finished_at,
        )
        logger.warning(
            "sms attempt %s failed id=%s status=%s; retry at %s",
            attempt_number,
            sms_id,
            result.status_code,
            decision.next_attempt_at.isoformat(),
        )
    else:
        await mark_sms_failed(session, sms_id, error_message=error_message, now=finished_at)
        logger.warning(
            "sms failed id=%s status=%s reason=%s error=%s",
            sms_id,
            result.status_code,
            decision.reason,
            error_message,
        )
    return DispatchOutcome.ATTEMPTED


@dataclass
class BatchResult:
    processed: int = 0
    attempted: int = 0
    cancelled: int = 0
    skipped: int = 0
    outcomes: dict[str, DispatchOutcome] = field(default_factory=dict)


async def process_ready_batch(
    *,
    session: AsyncSession,
    transport: SmsTransport,
    limit: int | None = None,
    pause_ms: int | None = None,
    provider: SubjectDataProvider | None = None,
    renderer: Renderer = render_sms,
    now: datetime | None = None,
) -> BatchResult:
    # Oldest-due first within the batch; a pause separates consecutive gateway calls.
    settings = get_settings()
    limit = settings.notify_send_batch_size if limit is None else limit
    pause_ms = settings.notify_send_pause_ms if pause_ms is None else pause_ms
    ready_ids = [row.id for row in await fetch_ready_sms(session, limit=limit, now=now)]
    batch = BatchResult()
    for index, sms_id in enumerate(ready_ids):
        outcome = await process_sms_record(
            session=session,
            sms_id=sms_id,
            transport=transport,
            provider=provider,
            renderer=renderer,
            now=now,
        )
        batch.processed += 1
        batch.outcomes[sms_id] = outcome
        if outcome is DispatchOutcome.ATTEMPTED:
            batch.attempted += 1
            if pause_ms > 0 and index < len(ready_ids) - 1:
                await asyncio.sleep(pause_ms / 1000.0)
        elif outcome is DispatchOutcome.CANCELLED:
            batch.cancelled += 1
        else:
            batch.skipped += 1
    return batch
