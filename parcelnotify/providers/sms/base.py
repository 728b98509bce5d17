from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error_message: str | None = None
    status_code: int | None = None


class SmsTransport(Protocol):
    async def send(self, destination: str, body: str) -> SendResult:
        ...
