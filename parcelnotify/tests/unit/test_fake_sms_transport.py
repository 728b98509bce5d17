from __future__ import annotations

import pytest

from parcelnotify.providers.sms.fake_sms import FakeSmsTransport


@pytest.mark.asyncio
async def test_fake_transport_records_successful_calls() -> None:
    transport = FakeSmsTransport()
    first = await transport.send("+46701234567", "hej")
    second = await transport.send("+46701234567", "hej igen")
    assert first.success and second.success
    assert first.provider_message_id != second.provider_message_id
    assert transport.call_count == 2
    assert transport.calls[1].body == "hej igen"


@pytest.mark.asyncio
async def test_fake_transport_fail_then_succeed() -> None:
    transport = FakeSmsTransport().fail_then_succeed(2, "busy", status_code=503)
    results = [await transport.send("+46701234567", "x") for _ in range(3)]
    assert [result.success for result in results] == [False, False, True]
    assert results[0].status_code == 503
    assert results[0].error_message == "busy"


@pytest.mark.asyncio
async def test_fake_transport_can_raise() -> None:
    transport = FakeSmsTransport().raise_error(RuntimeError("socket closed"))
    with pytest.raises(RuntimeError):
        await transport.send("+46701234567", "x")
    assert transport.call_count == 0
