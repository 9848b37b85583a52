"""Typing / recording indicators around a send."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from funnel_runner.clients.bridge import PageBridge
from funnel_runner.core.schema import StepType

log = structlog.get_logger()

COMPOSING = "composing"
RECORDING = "recording"


def presence_kind_for(step_type: StepType) -> Optional[str]:
    if step_type == StepType.TEXT:
        return COMPOSING
    if step_type == StepType.PTT:
        return RECORDING
    return None


@asynccontextmanager
async def presence(
    bridge: PageBridge,
    chat_id: str,
    kind: Optional[str],
    max_duration_ms: int = 20000,
    duration_ms: Optional[int] = None,
) -> AsyncIterator[None]:
    """Show `kind` to the remote party for the duration of the block.

    The paused signal is always sent on exit. Presence failures are logged,
    never raised.
    """
    if kind is None:
        yield
        return

    duration = min(duration_ms or max_duration_ms, max_duration_ms)
    try:
        if kind == RECORDING:
            result = await bridge.mark_recording(chat_id, duration)
        else:
            result = await bridge.mark_composing(chat_id, duration)
        if not result.ok:
            log.warning("presence_start_rejected", chat_id=chat_id, kind=kind, error=result.error)
    except Exception as e:
        log.warning("presence_start_failed", chat_id=chat_id, kind=kind, error=str(e))

    try:
        yield
    finally:
        try:
            await bridge.mark_paused(chat_id)
        except Exception as e:
            log.warning("presence_stop_failed", chat_id=chat_id, kind=kind, error=str(e))
