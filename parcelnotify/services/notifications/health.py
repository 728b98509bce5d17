from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.config import get_settings
from parcelnotify.domain.intents import stale_recovery_intents
from parcelnotify.domain.models import OutgoingSms
from parcelnotify.persistence.repos.outgoing_sms import stuck_sending_criteria


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmsHealthStats:
    sent: int
    delivered: int
    provider_failed: int
    not_delivered: int
    awaiting: int
    internal_failed: int
    stale_unconfirmed: int
    # Sending records left by a crash that the sweep will not recover.
    stuck_sending: int = 0

    @property
    def has_issues(self) -> bool:
        return any(
            (
                self.provider_failed,
                self.not_delivered,
                self.internal_failed,
                self.stale_unconfirmed,
                self.stuck_sending,
            )
        )

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["has_issues"] = self.has_issues
        return payload


async def compute_health_stats(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    window_hours: int | None = None,
) -> SmsHealthStats:
    """Aggregate delivery health over the trailing window ending at ``now``.

    Sent records are bucketed by the gateway's reported outcome; a record sent exactly
    at the window start still counts as awaiting, anything older without an outcome
    is stale. Stuck sending records are counted regardless of age so an alert keeps
    firing until an operator resolves them. Dismissed records never count.
    """
    now = now or datetime.now(timezone.utc)
    hours = get_settings().notify_health_window_hours if window_hours is None else window_hours
    window_start = now - timedelta(hours=max(1, int(hours)))
    not_dismissed = OutgoingSms.dismissed_at.is_(None)

    sent_rows = (
        await session.execute(
            select(OutgoingSms.provider_status, func.count())
            .where(
                not_dismissed,
                OutgoingSms.status == "sent",
                OutgoingSms.sent_at >= window_start,
                OutgoingSms.sent_at <= now,
            )
            .group_by(OutgoingSms.provider_status)
        )
    ).all()
    by_outcome: dict[str | None, int] = {status: int(count) for status, count in sent_rows}

    internal_failed = await session.scalar(
        select(func.count())
        .select_from(OutgoingSms)
        .where(
            not_dismissed,
            OutgoingSms.status == "failed",
            OutgoingSms.created_at >= window_start,
            OutgoingSms.created_at <= now,
        )
    )
    stale_unconfirmed = await session.scalar(
        select(func.count())
        .select_from(OutgoingSms)
        .where(
            not_dismissed,
            and_(
                OutgoingSms.status == "sent",
                OutgoingSms.provider_status.is_(None),
                OutgoingSms.sent_at < window_start,
            ),
        )
    )
    settings = get_settings()
    stuck_sending = await session.scalar(
        select(func.count())
        .select_from(OutgoingSms)
        .where(
            not_dismissed,
            *stuck_sending_criteria(
                excluded_intents=stale_recovery_intents(settings.notify_stale_recovery_intents),
                cutoff=now - timedelta(minutes=max(0, int(settings.notify_stale_sending_minutes))),
            ),
        )
    )
    return SmsHealthStats(
        sent=sum(by_outcome.values()),
        delivered=by_outcome.get("delivered", 0),
        provider_failed=by_outcome.get("failed", 0),
        not_delivered=by_outcome.get("not delivered", 0),
        awaiting=by_outcome.get(None, 0),
        internal_failed=int(internal_failed or 0),
        stale_unconfirmed=int(stale_unconfirmed or 0),
        stuck_sending=int(stuck_sending or 0),
    )
