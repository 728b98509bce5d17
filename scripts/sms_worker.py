from __future__ import annotations

import asyncio

from parcelnotify.core.logging import configure_logging
from parcelnotify.workers.sms_worker import run_sms_worker


async def _main() -> None:
    # Dedicated process for sweep, enqueue, dispatch and the daily health report.
    configure_logging()
    await run_sms_worker()


if __name__ == "__main__":
    asyncio.run(_main())
