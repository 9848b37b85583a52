"""Funnel execution engine: delays, events, run registry, sequencer."""

from funnel_runner.engine.delay import resolve_delay_seconds
from funnel_runner.engine.events import (
    ErrorEvent,
    EventBus,
    EventKind,
    FinishedEvent,
    RunStatus,
    StepEvent,
    Subscription,
)
from funnel_runner.engine.leads import LeadStore, merge_tags, normalize_tags
from funnel_runner.engine.media import MediaPayload, MediaResolver
from funnel_runner.engine.registry import RunHandle, RunRegistry
from funnel_runner.engine.runner import FunnelRunner
