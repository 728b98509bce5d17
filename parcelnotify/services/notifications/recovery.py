from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.config import get_settings
from parcelnotify.domain.intents import stale_recovery_intents
from parcelnotify.persistence.repos.outgoing_sms import count_stuck_sending, reset_stale_sending


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryResult:
    recovered_ids: list[str]
    stuck_count: int

    @property
    def recovered(self) -> int:
        return len(self.recovered_ids)


async def recover_stale_sending(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    stale_minutes: int | None = None,
    intents: frozenset[str] | None = None,
) -> RecoveryResult:
    """Re-queue records a crashed worker left in ``sending``.

    Only intents where a duplicate message is acceptable are reset; a worker may
    have died after the gateway accepted the message, so recovery trades a rare
    duplicate for never losing a reminder. Stale records of other intents are
    counted and logged for operators but left untouched.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    minutes = settings.notify_stale_sending_minutes if stale_minutes is None else stale_minutes
    cutoff = now - timedelta(minutes=max(0, int(minutes)))
    eligible = intents if intents is not None else stale_recovery_intents(settings.notify_stale_recovery_intents)

    recovered = await reset_stale_sending(session, intents=eligible, cutoff=cutoff, now=now)
    if recovered:
        logger.warning("recovered %s stale sending sms: %s", len(recovered), ", ".join(recovered))
    stuck = await count_stuck_sending(session, excluded_intents=eligible, cutoff=cutoff)
    if stuck:
        logger.error("%s sms stuck in sending are not eligible for automatic recovery", stuck)
    return RecoveryResult(recovered_ids=recovered, stuck_count=stuck)
