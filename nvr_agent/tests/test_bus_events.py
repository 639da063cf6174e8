import random

import pytest

from nvr_agent.pipeline.bus_events import BusEvent, EventKind, FaultPolicy
from nvr_agent.state.pipeline_state import Codec, PipelineState, RunState


class FakeController:
    def __init__(self, latency_ok=True):
        self.states = []
        self.quits = 0
        self.latency_calls = 0
        self.latency_ok = latency_ok

    def set_state(self, run_state):
        self.states.append(run_state)
        return True

    def recalculate_latency(self):
        self.latency_calls += 1
        return self.latency_ok

    def quit(self):
        self.quits += 1


def _playing(is_live=True):
    state = PipelineState(camera_id="camera-1", assumed_codec=Codec.H264, is_live=is_live)
    state.run_state = RunState.PLAYING
    return state


TRANSIENT = BusEvent(EventKind.ERROR, "source", "Could not read from resource.", transient=True)
FATAL = BusEvent(EventKind.ERROR, "decoder", "Internal data stream error.")
EOS = BusEvent(EventKind.EOS)


def test_transient_errors_keep_playing():
    state = _playing()
    controller = FakeController()
    policy = FaultPolicy(state, controller)

    for _ in range(5):
        assert policy.handle(TRANSIENT) is True

    assert state.run_state == RunState.PLAYING
    assert controller.states == []
    assert controller.quits == 0
    assert state.error_count == 5


@pytest.mark.parametrize("terminal", [FATAL, EOS])
def test_terminal_event_quiesces_exactly_once(terminal):
    state = _playing()
    controller = FakeController()
    policy = FaultPolicy(state, controller)

    assert policy.handle(terminal) is False
    policy.handle(terminal)
    policy.handle(FATAL)

    assert controller.states == [RunState.READY]
    assert controller.quits == 1
    assert state.quiesced
    assert state.run_state == RunState.READY


def test_random_sequences():
    rng = random.Random(1234)
    other = [
        BusEvent(EventKind.WARNING, "src", "late"),
        BusEvent(EventKind.LATENCY),
        BusEvent(EventKind.STREAM_START),
        BusEvent(EventKind.PROGRESS, message="connect"),
        BusEvent(EventKind.BUFFERING, percent=40),
    ]
    for _ in range(200):
        state = _playing()
        controller = FakeController()
        policy = FaultPolicy(state, controller)
        events = [rng.choice([TRANSIENT] + other) for _ in range(rng.randint(1, 20))]
        terminal_at = rng.choice([None, rng.randrange(len(events))])
        if terminal_at is not None:
            events.insert(terminal_at, rng.choice([FATAL, EOS]))

        for event in events:
            policy.handle(event)

        if terminal_at is None:
            assert state.run_state == RunState.PLAYING
            assert controller.quits == 0
        else:
            assert controller.states.count(RunState.READY) == 1
            assert controller.quits == 1


def test_buffering_ignored_when_live():
    state = _playing(is_live=True)
    controller = FakeController()
    FaultPolicy(state, controller).handle(BusEvent(EventKind.BUFFERING, percent=10))
    assert controller.states == []


def test_buffering_pauses_and_resumes_when_not_live():
    state = _playing(is_live=False)
    controller = FakeController()
    policy = FaultPolicy(state, controller)

    policy.handle(BusEvent(EventKind.BUFFERING, percent=10))
    policy.handle(BusEvent(EventKind.BUFFERING, percent=60))
    assert state.run_state == RunState.PAUSED
    policy.handle(BusEvent(EventKind.BUFFERING, percent=100))

    assert controller.states == [RunState.PAUSED, RunState.PLAYING]
    assert state.run_state == RunState.PLAYING


def test_buffering_pauses_until_pipeline_reports_live():
    state = PipelineState(camera_id="camera-1", assumed_codec=Codec.H264)
    state.run_state = RunState.PLAYING
    controller = FakeController()

    FaultPolicy(state, controller).handle(BusEvent(EventKind.BUFFERING, percent=10))

    assert not state.is_live
    assert controller.states == [RunState.PAUSED]


def test_clock_lost_pauses_then_plays():
    state = _playing()
    controller = FakeController()
    FaultPolicy(state, controller).handle(BusEvent(EventKind.CLOCK_LOST))
    assert controller.states == [RunState.PAUSED, RunState.PLAYING]
    assert state.run_state == RunState.PLAYING


def test_latency_failure_is_not_fatal():
    state = _playing()
    controller = FakeController(latency_ok=False)
    assert FaultPolicy(state, controller).handle(BusEvent(EventKind.LATENCY)) is True
    assert controller.latency_calls == 1
    assert controller.quits == 0


def test_state_change_updates_run_state():
    state = _playing()
    policy = FaultPolicy(state, FakeController())
    policy.handle(BusEvent(EventKind.STATE_CHANGED, message="playing -> paused", new_state=RunState.PAUSED))
    assert state.run_state == RunState.PAUSED
