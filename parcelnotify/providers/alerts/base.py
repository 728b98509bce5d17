from __future__ import annotations

from typing import Protocol

from parcelnotify.services.notifications.health import SmsHealthStats


class HealthReportSink(Protocol):
    async def report(self, stats: SmsHealthStats) -> bool:
        ...
