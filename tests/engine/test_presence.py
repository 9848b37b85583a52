from unittest.mock import AsyncMock

import pytest

from funnel_runner.clients.bridge import SendResult
from funnel_runner.core.errors import BridgeTimeoutError
from funnel_runner.core.schema import StepType
from funnel_runner.engine.presence import COMPOSING, RECORDING, presence, presence_kind_for


def make_bridge() -> AsyncMock:
    bridge = AsyncMock()
    bridge.mark_composing.return_value = SendResult(ok=True)
    bridge.mark_recording.return_value = SendResult(ok=True)
    bridge.mark_paused.return_value = SendResult(ok=True)
    return bridge


def test_presence_kind_mapping():
    assert presence_kind_for(StepType.TEXT) == COMPOSING
    assert presence_kind_for(StepType.PTT) == RECORDING
    assert presence_kind_for(StepType.AUDIO) is None
    assert presence_kind_for(StepType.IMAGE) is None


@pytest.mark.asyncio
async def test_composing_started_and_stopped():
    bridge = make_bridge()

    async with presence(bridge, "123", COMPOSING, max_duration_ms=20000, duration_ms=3000):
        bridge.mark_paused.assert_not_awaited()

    bridge.mark_composing.assert_awaited_once_with("123", 3000)
    bridge.mark_paused.assert_awaited_once_with("123")


@pytest.mark.asyncio
async def test_duration_is_capped():
    bridge = make_bridge()

    async with presence(bridge, "123", RECORDING, max_duration_ms=5000, duration_ms=60000):
        pass

    bridge.mark_recording.assert_awaited_once_with("123", 5000)


@pytest.mark.asyncio
async def test_stop_signal_sent_when_body_fails():
    bridge = make_bridge()

    with pytest.raises(RuntimeError):
        async with presence(bridge, "123", RECORDING):
            raise RuntimeError("send blew up")

    bridge.mark_paused.assert_awaited_once_with("123")


@pytest.mark.asyncio
async def test_presence_failures_never_fail_the_send():
    bridge = make_bridge()
    bridge.mark_composing.side_effect = BridgeTimeoutError()
    bridge.mark_paused.side_effect = BridgeTimeoutError()
    ran = []

    async with presence(bridge, "123", COMPOSING):
        ran.append(True)

    assert ran == [True]


@pytest.mark.asyncio
async def test_no_kind_sends_nothing():
    bridge = make_bridge()

    async with presence(bridge, "123", None):
        pass

    bridge.mark_composing.assert_not_awaited()
    bridge.mark_recording.assert_not_awaited()
    bridge.mark_paused.assert_not_awaited()
