from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parcelnotify.core.config import get_settings
from parcelnotify.persistence.db import SessionLocal
from parcelnotify.providers.alerts.base import HealthReportSink
from parcelnotify.providers.alerts.slack import SlackHealthSink
from parcelnotify.providers.sms.base import SmsTransport
from parcelnotify.providers.sms.factory import get_sms_transport
from parcelnotify.services.notifications.dispatcher import process_ready_batch
from parcelnotify.services.notifications.enqueue import enqueue_pickup_reminders
from parcelnotify.services.notifications.health import SmsHealthStats, compute_health_stats
from parcelnotify.services.notifications.recovery import recover_stale_sending


logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


class CycleGuard:
    """In-process guard that lets at most one dispatch cycle run at a time.

    Overlapping triggers (timer ticks, manual runs) skip instead of queueing up.
    Other processes are kept apart by the store's atomic claim, not by this guard.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        # No await between the check and the uncontended acquire, so the pair is atomic on the loop.
        if self._lock.locked():
            yield False
            return
        await self._lock.acquire()
        try:
            yield True
        finally:
            self._lock.release()


async def run_dispatch_cycle(
    *,
    guard: CycleGuard,
    transport: SmsTransport,
    session_factory: SessionFactory = SessionLocal,
    enqueue: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Run one sweep, enqueue and dispatch pass.

    Transport configuration errors propagate to the caller after the affected
    record has been released.
    """
    async with guard.hold() as acquired:
        if not acquired:
            logger.info("sms dispatch cycle already running; skipping")
            return {"status": "skipped_busy"}
        async with session_factory() as session:
            recovery = await recover_stale_sending(session, now=now)
            enqueued = await enqueue_pickup_reminders(session, now=now) if enqueue else 0
            batch = await process_ready_batch(session=session, transport=transport, now=now)
        summary = {
            "status": "ok",
            "recovered": recovery.recovered,
            "stuck": recovery.stuck_count,
            "enqueued": enqueued,
            "processed": batch.processed,
            "attempted": batch.attempted,
            "cancelled": batch.cancelled,
            "skipped": batch.skipped,
        }
        if batch.processed or recovery.recovered or enqueued:
            logger.info("sms dispatch cycle %s", summary)
        return summary


async def run_health_report(
    *,
    sink: HealthReportSink,
    session_factory: SessionFactory = SessionLocal,
    now: datetime | None = None,
) -> SmsHealthStats:
    async with session_factory() as session:
        stats = await compute_health_stats(session, now=now)
    if stats.has_issues:
        await sink.report(stats)
    else:
        logger.info("sms health ok: %s", stats.as_dict())
    return stats


class SmsScheduler:
    def __init__(
        self,
        *,
        transport: SmsTransport | None = None,
        sink: HealthReportSink | None = None,
        session_factory: SessionFactory = SessionLocal,
        guard: CycleGuard | None = None,
    ) -> None:
        self.transport = transport or get_sms_transport()
        self.sink = sink or SlackHealthSink()
        self.session_factory = session_factory
        self.guard = guard or CycleGuard()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def trigger_dispatch(self, *, enqueue: bool = True) -> dict[str, Any]:
        return await run_dispatch_cycle(
            guard=self.guard,
            transport=self.transport,
            session_factory=self.session_factory,
            enqueue=enqueue,
        )

    async def trigger_health_report(self) -> SmsHealthStats:
        return await run_health_report(sink=self.sink, session_factory=self.session_factory)

    async def _dispatch_tick(self) -> None:
        await self.trigger_dispatch(enqueue=False)

    async def _enqueue_tick(self) -> None:
        async with self.session_factory() as session:
            await enqueue_pickup_reminders(session)

    async def _health_tick(self) -> None:
        await self.trigger_health_report()

    async def _loop(
        self,
        name: str,
        interval_s: int,
        tick: Callable[[], Awaitable[None]],
        *,
        initial_delay: bool = False,
    ) -> None:
        # Keep each loop alive across failures while surfacing them in the logs.
        interval_s = max(1, int(interval_s))
        if initial_delay:
            await asyncio.sleep(interval_s)
        while True:
            try:
                await tick()
            except Exception:  # noqa: BLE001 - a failed tick must not stop the scheduler.
                logger.exception("sms scheduler %s tick failed", name)
            await asyncio.sleep(interval_s)

    def start(self) -> None:
        if self.is_running:
            return
        settings = get_settings()
        self._tasks = [
            asyncio.create_task(self._loop("enqueue", settings.notify_enqueue_interval_s, self._enqueue_tick)),
            asyncio.create_task(self._loop("dispatch", settings.notify_worker_poll_interval_s, self._dispatch_tick)),
            asyncio.create_task(
                self._loop("health", settings.notify_health_interval_s, self._health_tick, initial_delay=True)
            ),
        ]
        logger.info("sms scheduler started")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()
        logger.info("sms scheduler stopped")
