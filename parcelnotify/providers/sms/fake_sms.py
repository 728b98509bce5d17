from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from parcelnotify.providers.sms.base import SendResult


@dataclass(frozen=True)
class FakeSmsCall:
    destination: str
    body: str
    result: SendResult
    at: datetime


class FakeSmsTransport:
    """In-memory transport with scriptable outcomes for tests and local runs."""

    def __init__(self) -> None:
        self.calls: list[FakeSmsCall] = []
        self._mode = "success"
        self._error = ""
        self._status_code: int | None = None
        self._fail_count = 0
        self._raise: Exception | None = None
        self._counter = 0

    def always_succeed(self) -> FakeSmsTransport:
        self._mode = "success"
        self._raise = None
        return self

    def always_fail(self, error: str, status_code: int | None = None) -> FakeSmsTransport:
        self._mode = "fail"
        self._error = error
        self._status_code = status_code
        return self

    def fail_then_succeed(self, fail_count: int, error: str, status_code: int | None = None) -> FakeSmsTransport:
        self._mode = "fail_then_succeed"
        self._fail_count = int(fail_count)
        self._error = error
        self._status_code = status_code
        return self

    def raise_error(self, exc: Exception) -> FakeSmsTransport:
        self._raise = exc
        return self

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def _result(self) -> SendResult:
        failing = self._mode == "fail" or (
            self._mode == "fail_then_succeed" and self.call_count < self._fail_count
        )
        if failing:
            return SendResult(success=False, error_message=self._error, status_code=self._status_code)
        self._counter += 1
        return SendResult(success=True, provider_message_id=f"fake-{self._counter}")

    async def send(self, destination: str, body: str) -> SendResult:
        if self._raise is not None:
            raise self._raise
        result = self._result()
        self.calls.append(FakeSmsCall(destination=destination, body=body, result=result, at=datetime.now(timezone.utc)))
        return result
