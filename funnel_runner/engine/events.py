"""Run events and the listener bus observers subscribe to."""

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from funnel_runner.core.schema import FunnelStep, LeadCard, now_ms

log = structlog.get_logger()


class RunStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class StepEvent:
    run_id: str
    funnel_id: str
    chat_id: str
    step_id: str
    step_index: int
    step: FunnelStep
    lead: LeadCard
    resolved_delay_sec: Optional[float] = None
    ts: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ErrorEvent(StepEvent):
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class FinishedEvent:
    run_id: str
    funnel_id: str
    chat_id: str
    lead: Optional[LeadCard]
    status: RunStatus
    error: Optional[BaseException] = None
    ts: int = field(default_factory=now_ms)


class EventKind(str, Enum):
    STEP_START = "step_start"
    STEP_DONE = "step_done"
    ERROR = "error"
    FINISHED = "finished"


Listener = Callable[[Any], None]


class Subscription:
    """Handle returned by `EventBus.subscribe`. Call `unsubscribe()` to detach."""

    def __init__(self, bus: "EventBus", kind: EventKind, token: int):
        self._bus = bus
        self.kind = kind
        self.token = token

    def unsubscribe(self) -> bool:
        return self._bus.unsubscribe(self.kind, self.token)

    def __call__(self) -> bool:
        return self.unsubscribe()


class EventBus:
    """Per-kind listener lists. A failing listener never affects the others."""

    def __init__(self):
        self._listeners: dict[EventKind, list[tuple[int, Listener]]] = {
            kind: [] for kind in EventKind
        }
        self._tokens = itertools.count(1)

    def subscribe(self, kind: EventKind, listener: Listener) -> Subscription:
        token = next(self._tokens)
        self._listeners[EventKind(kind)].append((token, listener))
        return Subscription(self, EventKind(kind), token)

    def unsubscribe(self, kind: EventKind, token: int) -> bool:
        listeners = self._listeners[EventKind(kind)]
        for idx, (existing, _) in enumerate(listeners):
            if existing == token:
                del listeners[idx]
                return True
        return False

    def listener_count(self, kind: EventKind) -> int:
        return len(self._listeners[EventKind(kind)])

    def emit(self, kind: EventKind, event: Any) -> None:
        # Snapshot so listeners may unsubscribe while being called
        for token, listener in list(self._listeners[EventKind(kind)]):
            try:
                listener(event)
            except Exception as e:
                log.error("listener_failed", kind=EventKind(kind).value, token=token, error=str(e))
