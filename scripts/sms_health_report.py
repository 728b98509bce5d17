from __future__ import annotations

import asyncio
import json

from parcelnotify.core.logging import configure_logging
from parcelnotify.persistence.db import engine
from parcelnotify.providers.alerts.slack import SlackHealthSink
from parcelnotify.services.scheduler import run_health_report


async def _main() -> None:
    # One-shot report for cron setups that do not run the in-process scheduler.
    configure_logging()
    try:
        stats = await run_health_report(sink=SlackHealthSink())
    finally:
        await engine.dispose()
    print(json.dumps(stats.as_dict(), indent=2))


if __name__ == "__main__":
    asyncio.run(_main())
