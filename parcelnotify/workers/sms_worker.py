from __future__ import annotations

import asyncio
import logging

from parcelnotify.persistence.db import engine
from parcelnotify.services.scheduler import SmsScheduler


logger = logging.getLogger(__name__)


async def run_sms_worker(scheduler: SmsScheduler | None = None) -> None:
    # Run the scheduler loops until cancelled; the API process can run them instead when enabled.
    scheduler = scheduler or SmsScheduler()
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await engine.dispose()
        logger.info("sms worker shut down")
