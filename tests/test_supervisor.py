from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

import pytest

from config import RecognitionSettings, SupervisorTimings
from errors import (
    ERROR_AUDIO,
    ERROR_CLIENT,
    ERROR_INSUFFICIENT_PERMISSIONS,
    ERROR_NETWORK,
    ERROR_NETWORK_TIMEOUT,
    ERROR_NO_MATCH,
    ERROR_RECOGNIZER_BUSY,
    ERROR_SERVER,
    ERROR_SPEECH_TIMEOUT,
    EngineUnavailableError,
)
from fakes import FakeEngine, ManualScheduler
from models import EngineEvent, EngineEventKind, MicState, SupervisorState
from supervisor import SessionSupervisor, SupervisorStatus, is_displayable
from transcript import TranscriptStore

FATAL_CODES = [
    ERROR_AUDIO,
    ERROR_CLIENT,
    ERROR_INSUFFICIENT_PERMISSIONS,
    ERROR_NETWORK,
    ERROR_NETWORK_TIMEOUT,
    ERROR_RECOGNIZER_BUSY,
    ERROR_SERVER,
    "SOMETHING_NEW",
]


@dataclass
class Harness:
    supervisor: SessionSupervisor
    engine: FakeEngine
    sink: TranscriptStore
    scheduler: ManualScheduler
    transitions: list[tuple[SupervisorState, SupervisorState]] = field(default_factory=list)
    statuses: list[SupervisorStatus] = field(default_factory=list)

    @property
    def texts(self) -> list[str]:
        return [line.text for line in self.sink.lines]


def make_harness(
    session_timeout_s: float = 240.0,
    conversation_timeout_s: float = 300.0,
    restart_delay_s: float = 0.05,
    settings: Optional[Callable[[], RecognitionSettings]] = None,
) -> Harness:
    engine = FakeEngine()
    sink = TranscriptStore()
    scheduler = ManualScheduler()
    transitions: list[tuple[SupervisorState, SupervisorState]] = []
    statuses: list[SupervisorStatus] = []
    supervisor = SessionSupervisor(
        engine=engine,
        sink=sink,
        settings=settings or (lambda: RecognitionSettings(language="en-US", silence_timeout_s=5)),
        scheduler=scheduler,
        timings=SupervisorTimings(
            session_timeout_s=session_timeout_s,
            conversation_timeout_s=conversation_timeout_s,
            restart_delay_s=restart_delay_s,
        ),
        on_state_change=lambda f, t: transitions.append((f, t)),
        on_status=statuses.append,
    )
    return Harness(supervisor, engine, sink, scheduler, transitions, statuses)


def listening_harness(**timings: float) -> Harness:
    h = make_harness(**timings)
    h.supervisor.tap_mic()
    h.engine.ready()
    assert h.supervisor.state == SupervisorState.LISTENING
    return h


# ---------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------

def test_happy_path_appends_line_and_restarts() -> None:
    h = make_harness()

    h.supervisor.tap_mic()
    assert h.supervisor.state == SupervisorState.STARTING
    assert h.supervisor.mic_state == MicState.LISTENING
    assert h.supervisor.is_listening is False
    assert h.engine.starts == [("en-US", 5)]

    h.engine.ready()
    assert h.supervisor.state == SupervisorState.LISTENING
    assert h.supervisor.is_listening is True

    h.engine.speech_started()
    h.engine.final("hello")

    assert h.texts == ["hello"]
    assert h.supervisor.state == SupervisorState.AWAITING_RESTART
    assert h.supervisor.mic_state == MicState.LISTENING
    assert h.supervisor.conversation_mode is True

    h.scheduler.advance(0.05)
    assert h.supervisor.state == SupervisorState.STARTING
    assert len(h.engine.starts) == 2
    assert h.texts == ["hello"]


def test_silence_only_issues_exactly_one_restart() -> None:
    h = listening_harness()

    h.engine.error(ERROR_NO_MATCH, "no speech input")
    assert h.supervisor.state == SupervisorState.AWAITING_RESTART

    h.scheduler.advance(0.05)
    h.scheduler.advance(1.0)

    assert len(h.engine.starts) == 2
    assert h.sink.lines == ()


def test_explicit_stop_mid_listening() -> None:
    h = listening_harness()

    h.supervisor.tap_mic()

    assert h.engine.stop_calls == 1
    assert h.supervisor.mic_state == MicState.IDLE
    assert h.supervisor.state == SupervisorState.IDLE
    assert h.supervisor.conversation_mode is False
    assert h.sink.lines == ()
    assert h.scheduler.pending() == []


def test_fatal_mid_conversation_then_fresh_start() -> None:
    h = listening_harness()

    h.engine.error(ERROR_INSUFFICIENT_PERMISSIONS, "insufficient permissions")

    assert len(h.sink.lines) == 1
    assert "insufficient permissions" in h.sink.lines[0].text.lower()
    assert h.sink.lines[0].is_error is True
    assert h.supervisor.mic_state == MicState.IDLE
    assert h.scheduler.pending() == []

    h.supervisor.tap_mic()
    assert h.supervisor.state == SupervisorState.STARTING
    assert len(h.engine.starts) == 2


# ---------------------------------------------------------------
# Properties
# ---------------------------------------------------------------

@pytest.mark.parametrize("codes", [
    [ERROR_NO_MATCH],
    [ERROR_SPEECH_TIMEOUT, ERROR_NO_MATCH, ERROR_SPEECH_TIMEOUT],
    [ERROR_NO_MATCH] * 6,
])
def test_recoverable_errors_never_end_conversation(codes: list[str]) -> None:
    h = listening_harness()

    for code in codes:
        h.engine.error(code)
        assert h.supervisor.state in (SupervisorState.LISTENING, SupervisorState.AWAITING_RESTART)
        h.scheduler.advance(0.05)
        assert h.supervisor.state == SupervisorState.STARTING
        h.engine.ready()

    assert h.supervisor.state == SupervisorState.LISTENING
    assert h.sink.lines == ()
    assert len(h.engine.starts) == len(codes) + 1


def test_recoverable_error_before_ready_also_restarts() -> None:
    h = make_harness()
    h.supervisor.tap_mic()

    h.engine.error(ERROR_SPEECH_TIMEOUT)
    assert h.supervisor.state == SupervisorState.AWAITING_RESTART
    h.scheduler.advance(0.05)

    assert len(h.engine.starts) == 2
    assert h.sink.lines == ()


@pytest.mark.parametrize("code", FATAL_CODES)
def test_fatal_error_reaches_idle_with_one_line(code: str) -> None:
    h = listening_harness()

    h.engine.error(code)

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.supervisor.mic_state == MicState.IDLE
    assert len(h.sink.lines) == 1
    assert h.sink.lines[0].text.startswith("❌ Error: ")
    assert h.scheduler.pending() == []


def test_fatal_error_while_starting() -> None:
    h = make_harness()
    h.supervisor.tap_mic()

    h.engine.error(ERROR_RECOGNIZER_BUSY)

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.texts == ["❌ Error: RecognitionService busy"]
    assert (SupervisorState.STARTING, SupervisorState.IDLE) in h.transitions


def test_unknown_error_uses_engine_detail() -> None:
    h = listening_harness()

    h.engine.error("ERROR_TOO_MANY_REQUESTS", "too many requests")

    assert h.texts == ["❌ Error: too many requests"]


def test_double_stop_is_noop() -> None:
    h = listening_harness()

    h.supervisor.stop_conversation()
    cancels = h.scheduler.cancel_calls
    stops = h.engine.stop_calls
    transitions = list(h.transitions)

    h.supervisor.stop_conversation()

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.scheduler.cancel_calls == cancels
    assert h.engine.stop_calls == stops
    assert h.transitions == transitions


def test_session_expiry_restarts_exactly_once() -> None:
    h = listening_harness()
    h.engine.speech_started()
    h.engine.speech_ended()

    h.scheduler.advance(240.0)
    assert h.supervisor.state == SupervisorState.AWAITING_RESTART
    assert h.engine.stop_calls == 1
    assert h.sink.lines == ()

    h.scheduler.advance(0.05)
    h.scheduler.advance(0.5)

    assert h.engine.stop_calls == 1
    assert len(h.engine.starts) == 2
    assert h.supervisor.state == SupervisorState.STARTING


def test_session_timer_is_held_while_speech_continues() -> None:
    h = listening_harness(conversation_timeout_s=1000.0)
    h.engine.speech_started()

    h.scheduler.advance(250.0)

    assert h.supervisor.state == SupervisorState.LISTENING
    assert h.engine.stop_calls == 0

    h.engine.speech_ended()
    h.scheduler.advance(240.0)
    assert h.engine.stop_calls == 1


def test_conversation_expiry_cancels_pending_restart() -> None:
    h = listening_harness(conversation_timeout_s=1.0)
    h.scheduler.advance(0.96)
    h.engine.error(ERROR_NO_MATCH)
    assert h.supervisor.state == SupervisorState.AWAITING_RESTART

    h.scheduler.advance(0.1)

    assert h.supervisor.state == SupervisorState.IDLE
    assert len(h.engine.starts) == 1
    assert h.engine.running is False
    assert h.scheduler.pending() == []


def test_conversation_expiry_after_restart_in_same_advance() -> None:
    h = listening_harness(conversation_timeout_s=1.0)
    h.scheduler.advance(0.94)
    h.engine.error(ERROR_NO_MATCH)

    h.scheduler.advance(0.1)

    assert len(h.engine.starts) == 2
    assert h.supervisor.state == SupervisorState.IDLE
    assert h.engine.running is False


def test_conversation_expiry_racing_final_still_stops() -> None:
    h = listening_harness(conversation_timeout_s=1.0)
    h.scheduler.advance(0.99)
    # The conversation timer fires while the final result is being handled.
    h.engine.on_stop = lambda: h.scheduler.advance(0.02)

    h.engine.final("hello")

    assert h.texts == ["hello"]
    assert h.supervisor.state == SupervisorState.IDLE
    assert h.supervisor.conversation_mode is False
    h.scheduler.advance(1.0)
    assert len(h.engine.starts) == 1


def test_conversation_times_out_without_speech() -> None:
    h = listening_harness()

    h.scheduler.advance(300.0)

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.supervisor.conversation_mode is False
    assert h.scheduler.pending() == []
    assert h.engine.running is False
    assert h.sink.lines == ()


def test_detected_speech_extends_conversation() -> None:
    h = listening_harness()
    h.scheduler.advance(200.0)
    h.engine.speech_started()

    h.scheduler.advance(150.0)

    assert h.supervisor.state == SupervisorState.LISTENING


def test_final_resets_conversation_window() -> None:
    h = listening_harness()
    h.scheduler.advance(200.0)
    h.engine.final("still here")
    h.scheduler.advance(0.05)
    h.engine.ready()

    h.scheduler.advance(150.0)

    assert h.supervisor.conversation_mode is True
    assert h.supervisor.state in (SupervisorState.LISTENING, SupervisorState.AWAITING_RESTART, SupervisorState.STARTING)


# ---------------------------------------------------------------
# Finals, segments and filtering
# ---------------------------------------------------------------

@pytest.mark.parametrize("text", ["", "   ", "No speech detected", "❌ No speech detected"])
def test_placeholder_final_is_not_appended_but_restarts(text: str) -> None:
    h = listening_harness()

    h.engine.final(text)
    h.scheduler.advance(0.05)

    assert h.sink.lines == ()
    assert len(h.engine.starts) == 2


def test_is_displayable() -> None:
    assert is_displayable(" hello ") is True
    assert is_displayable("") is False
    assert is_displayable("no speech detected") is False


def test_final_text_is_stripped_and_ordered() -> None:
    h = listening_harness()

    for text in ["  first ", "second", "third"]:
        h.engine.final(text)
        h.scheduler.advance(0.05)
        h.engine.ready()

    assert h.texts == ["first", "second", "third"]


def test_events_from_stopped_segment_are_dropped() -> None:
    h = listening_harness()
    old_callback = h.engine.on_event
    h.supervisor.tap_mic()

    old_callback(EngineEvent(kind=EngineEventKind.FINAL, text="late"))
    old_callback(EngineEvent(kind=EngineEventKind.ERROR, code=ERROR_AUDIO))

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.sink.lines == ()


def test_late_event_from_previous_segment_does_not_touch_new_one() -> None:
    h = listening_harness()
    h.engine.final("one")
    old_callback = h.engine.on_event
    h.scheduler.advance(0.05)
    h.engine.ready()

    old_callback(EngineEvent(kind=EngineEventKind.ERROR, code=ERROR_SERVER))

    assert h.supervisor.state == SupervisorState.LISTENING
    assert h.texts == ["one"]


def test_stop_while_awaiting_restart_discards_restart() -> None:
    h = listening_harness()
    h.engine.final("hello")
    assert h.engine.stop_calls == 1

    h.supervisor.tap_mic()
    h.scheduler.advance(1.0)

    assert h.supervisor.state == SupervisorState.IDLE
    assert len(h.engine.starts) == 1
    assert h.engine.stop_calls == 1


def test_mic_state_does_not_flicker_across_restarts() -> None:
    h = listening_harness()
    for text in ["a", "b"]:
        h.engine.final(text)
        h.scheduler.advance(0.05)
        h.engine.ready()

    listening = [s for s in h.statuses if s.state is not SupervisorState.IDLE]
    assert listening
    assert all(s.mic_state is MicState.LISTENING for s in listening)
    assert all(s.is_listening for s in h.statuses if s.state is SupervisorState.AWAITING_RESTART)


def test_is_listening_waits_for_ready_of_each_segment() -> None:
    h = listening_harness()
    first = h.supervisor.segment
    assert first is not None

    h.engine.final("hello")
    assert h.supervisor.segment is None
    h.scheduler.advance(0.05)

    second = h.supervisor.segment
    assert second is not None
    assert second.segment_id == first.segment_id + 1
    assert h.supervisor.state == SupervisorState.STARTING
    assert h.supervisor.mic_state == MicState.LISTENING
    assert h.supervisor.is_listening is False

    h.engine.ready()
    assert h.supervisor.is_listening is True


def test_partial_and_volume_reach_status() -> None:
    h = listening_harness()

    h.engine.partial("hel")
    h.engine.volume(1.7)
    assert h.supervisor.status.partial_text == "hel"
    assert h.supervisor.status.volume_level == 1.0

    h.engine.volume(-0.5)
    assert h.supervisor.status.volume_level == 0.0

    h.engine.final("hello")
    assert h.supervisor.status.partial_text == ""

    h.supervisor.tap_mic()
    assert h.statuses[-1] == SupervisorStatus()


# ---------------------------------------------------------------
# Commands and error handling
# ---------------------------------------------------------------

def test_engine_unavailable_surfaces_immediately() -> None:
    h = make_harness()
    h.engine.fail_start = EngineUnavailableError("no microphone")

    h.supervisor.tap_mic()

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.texts == ["❌ Error: Speech recognition not available"]
    assert h.supervisor.conversation_mode is False
    assert h.scheduler.pending() == []


def test_single_recognition_stops_after_final() -> None:
    h = make_harness()
    h.supervisor.start_single()
    assert h.supervisor.conversation_mode is False
    h.engine.ready()

    h.engine.final("just once")
    h.scheduler.advance(1.0)

    assert h.texts == ["just once"]
    assert h.supervisor.state == SupervisorState.IDLE
    assert len(h.engine.starts) == 1
    assert (SupervisorState.LISTENING, SupervisorState.STOPPING) in h.transitions
    assert (SupervisorState.STOPPING, SupervisorState.IDLE) in h.transitions
    assert h.scheduler.pending() == []


def test_single_recognition_recoverable_error_is_silent() -> None:
    h = make_harness()
    h.supervisor.start_single()
    h.engine.ready()

    h.engine.error(ERROR_NO_MATCH)

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.sink.lines == ()
    assert len(h.engine.starts) == 1


def test_start_conversation_upgrades_single_recognition() -> None:
    h = make_harness()
    h.supervisor.start_single()
    h.engine.ready()

    h.supervisor.start_conversation()
    h.engine.final("more")
    h.scheduler.advance(0.05)

    assert h.supervisor.conversation_mode is True
    assert len(h.engine.starts) == 2


def test_clear_transcript_stops_and_clears() -> None:
    h = listening_harness()
    h.engine.final("hello")
    h.scheduler.advance(0.05)
    h.engine.ready()

    h.supervisor.clear_transcript()

    assert h.sink.lines == ()
    assert h.supervisor.state == SupervisorState.IDLE
    assert h.engine.running is False


def test_engine_stop_failure_still_reaches_idle() -> None:
    h = listening_harness()
    h.engine.fail_stop = RuntimeError("engine died")

    h.supervisor.tap_mic()

    assert h.supervisor.state == SupervisorState.IDLE
    assert h.supervisor.mic_state == MicState.IDLE


def test_settings_are_read_at_conversation_start() -> None:
    settings = iter([
        RecognitionSettings(language="de-DE", silence_timeout_s=3),
        RecognitionSettings(language="fr-FR", silence_timeout_s=9),
    ])
    h = make_harness(settings=lambda: next(settings))

    h.supervisor.tap_mic()
    h.engine.ready()
    h.engine.final("hallo")
    h.scheduler.advance(0.05)
    h.supervisor.tap_mic()
    h.supervisor.tap_mic()

    assert h.engine.starts == [("de-DE", 3), ("de-DE", 3), ("fr-FR", 9)]


def test_observer_failure_does_not_escape_tap_mic() -> None:
    engine = FakeEngine()
    supervisor = SessionSupervisor(
        engine=engine,
        sink=TranscriptStore(),
        scheduler=ManualScheduler(),
        on_state_change=lambda f, t: 1 / 0,
        on_status=lambda s: 1 / 0,
    )

    supervisor.tap_mic()

    assert supervisor.state == SupervisorState.STARTING


def test_shutdown_closes_scheduler_and_ignores_commands() -> None:
    h = listening_harness()

    h.supervisor.shutdown()
    h.supervisor.tap_mic()

    assert h.scheduler.closed is True
    assert h.supervisor.state == SupervisorState.IDLE
    assert len(h.engine.starts) == 1
