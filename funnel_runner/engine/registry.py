"""In-flight run handles: cancellation, pause and captured errors."""

import asyncio
import time
from typing import Optional
from uuid import uuid4

import structlog

log = structlog.get_logger()


def create_run_id() -> str:
    return f"funnel-{int(time.time() * 1000)}-{uuid4().hex[:12]}"


class RunHandle:
    """State for one run. Only the sequencer that owns the run awaits on it."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.error: Optional[BaseException] = None
        self.task: Optional[asyncio.Task] = None
        self._cancelled = asyncio.Event()
        self._paused = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def pause(self) -> None:
        self._resumed.clear()
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()
        self._resumed.set()

    async def _first(self, *events: asyncio.Event, timeout: Optional[float] = None) -> None:
        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def checkpoint(self) -> bool:
        """Block while paused. Returns False once the run is cancelled."""
        while self.paused and not self.cancelled:
            await self._first(self._resumed, self._cancelled)
        return not self.cancelled

    async def sleep(self, seconds: float) -> bool:
        """Wait `seconds` of unpaused time. Returns False if cancelled first."""
        loop = asyncio.get_running_loop()
        remaining = seconds
        while remaining > 0:
            if not await self.checkpoint():
                return False
            started = loop.time()
            await self._first(self._cancelled, self._paused, timeout=remaining)
            remaining -= loop.time() - started
        return not self.cancelled


class RunRegistry:
    """Owns the handles of runs that have not reached a terminal state."""

    def __init__(self):
        self._runs: dict[str, RunHandle] = {}

    def create(self) -> RunHandle:
        run_id = create_run_id()
        while run_id in self._runs:
            run_id = create_run_id()
        handle = RunHandle(run_id)
        self._runs[run_id] = handle
        return handle

    def get(self, run_id: str) -> Optional[RunHandle]:
        return self._runs.get(run_id)

    def remove(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None

    def cancel(self, run_id: str) -> bool:
        handle = self._runs.get(run_id)
        if not handle:
            return False
        handle.cancel()
        log.info("run_cancel_requested", run_id=run_id)
        return True

    def pause(self, run_id: str) -> bool:
        handle = self._runs.get(run_id)
        if not handle or handle.cancelled:
            return False
        handle.pause()
        log.info("run_paused", run_id=run_id)
        return True

    def resume(self, run_id: str) -> bool:
        handle = self._runs.get(run_id)
        if not handle or not handle.paused:
            return False
        handle.resume()
        log.info("run_resumed", run_id=run_id)
        return True

    def active_runs(self) -> list[str]:
        return list(self._runs)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)
