from funnel_runner.core.schema import FunnelStep, LeadCard, StepType
from funnel_runner.engine.events import EventBus, EventKind, FinishedEvent, RunStatus, StepEvent


def make_event(index: int = 0) -> StepEvent:
    return StepEvent(
        run_id="run-1",
        funnel_id="f1",
        chat_id="123",
        step_id=f"s{index}",
        step_index=index,
        step=FunnelStep(id=f"s{index}", type=StepType.DELAY),
        lead=LeadCard(id="lead-1", chat_id="123"),
    )


def test_listeners_called_in_subscription_order():
    bus = EventBus()
    calls = []
    bus.subscribe(EventKind.STEP_START, lambda e: calls.append(("first", e.step_index)))
    bus.subscribe(EventKind.STEP_START, lambda e: calls.append(("second", e.step_index)))

    bus.emit(EventKind.STEP_START, make_event(3))

    assert calls == [("first", 3), ("second", 3)]


def test_channels_are_independent():
    bus = EventBus()
    done = []
    bus.subscribe(EventKind.STEP_DONE, done.append)

    bus.emit(EventKind.STEP_START, make_event())

    assert done == []


def test_failing_listener_does_not_stop_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("observer bug")

    bus.subscribe(EventKind.FINISHED, broken)
    bus.subscribe(EventKind.FINISHED, received.append)

    event = FinishedEvent(run_id="r", funnel_id="f", chat_id="c",
                          lead=LeadCard(id="l", chat_id="c"), status=RunStatus.COMPLETED)
    bus.emit(EventKind.FINISHED, event)

    assert received == [event]


def test_unsubscribe_by_token():
    bus = EventBus()
    calls = []
    listener = calls.append
    first = bus.subscribe(EventKind.ERROR, listener)
    # Same callable twice gets two independent subscriptions
    second = bus.subscribe(EventKind.ERROR, listener)

    assert first.unsubscribe() is True
    assert first.unsubscribe() is False
    assert bus.listener_count(EventKind.ERROR) == 1

    bus.emit(EventKind.ERROR, make_event())
    assert len(calls) == 1

    second()
    assert bus.listener_count(EventKind.ERROR) == 0


def test_listener_may_unsubscribe_during_emit():
    bus = EventBus()
    calls = []
    holder = {}

    def once(event):
        calls.append(event)
        holder["sub"].unsubscribe()

    holder["sub"] = bus.subscribe(EventKind.STEP_DONE, once)
    bus.emit(EventKind.STEP_DONE, make_event())
    bus.emit(EventKind.STEP_DONE, make_event())

    assert len(calls) == 1
