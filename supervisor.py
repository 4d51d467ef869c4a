"""State-machine based supervision of continuous recognition.

The recognition engine only supports short single-shot segments: each one
ends on its own after a pause, and the engine kills sessions that run past
an undocumented ceiling. ``SessionSupervisor`` strings segments together
into one conversation, restarting the engine after every final result,
preempting the session ceiling with its own session timer and leaving
conversation mode after a long stretch without speech.

All inputs (user commands, engine callbacks, timer firings) are posted to
one FIFO mailbox and handled one at a time. Whichever thread posts into an
empty mailbox drains it; other threads only enqueue. Nothing else touches
supervisor state.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from config import RecognitionSettings, SupervisorTimings
from errors import (
    ENGINE_UNAVAILABLE,
    ERROR_CLIENT,
    NO_SPEECH_PLACEHOLDER,
    ErrorClassifier,
    format_error_line,
)
from interfaces import EngineAdapter, Scheduler, TranscriptSink
from models import (
    EngineEvent,
    EngineEventKind,
    ErrorKind,
    MicState,
    Segment,
    SupervisorState,
    TranscriptLine,
)
from timers import CONVERSATION, RESTART, SESSION, ThreadingScheduler, TimerSet

logger = logging.getLogger(__name__)

StateCallback = Callable[[SupervisorState, SupervisorState], None]
SettingsProvider = Callable[[], RecognitionSettings]

_ACTIVE_STATES = (
    SupervisorState.STARTING,
    SupervisorState.LISTENING,
    SupervisorState.AWAITING_RESTART,
)


class Command(str, Enum):
    TAP_MIC = "tap_mic"
    START_CONVERSATION = "start_conversation"
    STOP_CONVERSATION = "stop_conversation"
    START_SINGLE = "start_single"
    CLEAR_TRANSCRIPT = "clear_transcript"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class CommandEvent:
    command: Command


@dataclass(frozen=True)
class EngineSignal:
    segment_id: int
    event: EngineEvent


@dataclass(frozen=True)
class TimerFired:
    name: str
    token: int


SupervisorEvent = Union[CommandEvent, EngineSignal, TimerFired]


@dataclass(frozen=True)
class SupervisorStatus:
    state: SupervisorState = SupervisorState.IDLE
    mic_state: MicState = MicState.IDLE
    conversation_mode: bool = False
    is_listening: bool = False
    volume_level: float = 0.0
    partial_text: str = ""


StatusCallback = Callable[[SupervisorStatus], None]


def is_displayable(text: str) -> bool:
    """Whether a final result belongs in the transcript."""
    stripped = text.strip()
    if not stripped:
        return False
    return NO_SPEECH_PLACEHOLDER.lower() not in stripped.lower()


class SessionSupervisor:
    def __init__(
        self,
        engine: EngineAdapter,
        sink: TranscriptSink,
        settings: Optional[SettingsProvider] = None,
        scheduler: Optional[Scheduler] = None,
        classifier: Optional[ErrorClassifier] = None,
        timings: Optional[SupervisorTimings] = None,
        on_state_change: Optional[StateCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self._engine = engine
        self._sink = sink
        self._settings = settings or RecognitionSettings
        self._scheduler = scheduler or ThreadingScheduler()
        self._classifier = classifier or ErrorClassifier()
        self._timings = timings or SupervisorTimings()
        self._on_state_change = on_state_change
        self._on_status = on_status

        self._timers = TimerSet(self._scheduler, self._handle_timer_fired)

        self._mailbox: deque[SupervisorEvent] = deque()
        self._mailbox_lock = threading.Lock()
        self._draining = False

        self._state = SupervisorState.IDLE
        self._conversation_mode = False
        self._is_listening = False
        self._volume_level = 0.0
        self._partial_text = ""
        self._segment: Optional[Segment] = None
        self._segment_seq = 0
        self._settings_in_use = RecognitionSettings()
        self._closed = False
        self._last_status = SupervisorStatus()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def mic_state(self) -> MicState:
        return MicState.LISTENING if self._state in _ACTIVE_STATES else MicState.IDLE

    @property
    def conversation_mode(self) -> bool:
        return self._conversation_mode

    @property
    def is_listening(self) -> bool:
        return self._is_listening

    @property
    def segment(self) -> Optional[Segment]:
        return self._segment

    @property
    def timers(self) -> TimerSet:
        return self._timers

    @property
    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            state=self._state,
            mic_state=self.mic_state,
            conversation_mode=self._conversation_mode,
            is_listening=self._is_listening,
            volume_level=self._volume_level,
            partial_text=self._partial_text,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def tap_mic(self) -> None:
        self._post(CommandEvent(Command.TAP_MIC))

    def start_conversation(self) -> None:
        self._post(CommandEvent(Command.START_CONVERSATION))

    def stop_conversation(self) -> None:
        self._post(CommandEvent(Command.STOP_CONVERSATION))

    def start_single(self) -> None:
        self._post(CommandEvent(Command.START_SINGLE))

    def clear_transcript(self) -> None:
        self._post(CommandEvent(Command.CLEAR_TRANSCRIPT))

    def shutdown(self) -> None:
        self._post(CommandEvent(Command.SHUTDOWN))

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    def _post(self, event: SupervisorEvent) -> None:
        with self._mailbox_lock:
            self._mailbox.append(event)
            if self._draining:
                return
            self._draining = True
        self._drain()

    def _drain(self) -> None:
        try:
            while True:
                with self._mailbox_lock:
                    if not self._mailbox:
                        self._draining = False
                        return
                    event = self._mailbox.popleft()
                try:
                    self._dispatch(event)
                except Exception:
                    logger.exception("Supervisor failed while handling %r", event)
                    self._recover()
                self._publish_status()
        except BaseException:
            with self._mailbox_lock:
                self._draining = False
            raise

    def _dispatch(self, event: SupervisorEvent) -> None:
        if self._closed:
            logger.debug("Supervisor closed, dropping %r", event)
            return
        if isinstance(event, CommandEvent):
            self._handle_command(event.command)
        elif isinstance(event, EngineSignal):
            self._handle_engine_signal(event)
        elif isinstance(event, TimerFired):
            self._handle_timer(event)

    def _handle_timer_fired(self, name: str, token: int) -> None:
        self._post(TimerFired(name=name, token=token))

    def _engine_callback(self, segment_id: int) -> Callable[[EngineEvent], None]:
        def _on_event(event: EngineEvent) -> None:
            self._post(EngineSignal(segment_id=segment_id, event=event))

        return _on_event

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _handle_command(self, command: Command) -> None:
        logger.debug("Command %s in state %s", command.value, self._state.value)
        if command is Command.TAP_MIC:
            if self._state is SupervisorState.IDLE:
                self._begin(conversation=True)
            else:
                self._stop_all("user stop")
        elif command is Command.START_CONVERSATION:
            if self._state is SupervisorState.IDLE:
                self._begin(conversation=True)
            elif not self._conversation_mode:
                self._conversation_mode = True
                self._timers.conversation.arm(self._timings.conversation_timeout_s)
        elif command is Command.STOP_CONVERSATION:
            self._stop_all("user stop")
        elif command is Command.START_SINGLE:
            if self._state is SupervisorState.IDLE:
                self._begin(conversation=False)
        elif command is Command.CLEAR_TRANSCRIPT:
            self._stop_all("transcript cleared")
            self._sink.clear()
        elif command is Command.SHUTDOWN:
            self._stop_all("shutdown")
            self._closed = True
            self._scheduler.shutdown()

    def _begin(self, conversation: bool) -> None:
        self._settings_in_use = self._settings()
        self._conversation_mode = conversation
        logger.info(
            "Starting %s (language=%s, silence=%ss)",
            "conversation" if conversation else "single recognition",
            self._settings_in_use.language,
            self._settings_in_use.silence_timeout_s,
        )
        if conversation:
            self._timers.conversation.arm(self._timings.conversation_timeout_s)
        self._start_segment()

    def _stop_all(self, reason: str) -> None:
        if self._state is SupervisorState.IDLE:
            return
        logger.info("Stopping (%s)", reason)
        self._conversation_mode = False
        self._timers.cancel_all()
        self._end_segment()
        self._transition(SupervisorState.IDLE)

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    def _start_segment(self) -> None:
        if self._segment is not None:
            logger.warning("Segment %d still live, not starting another", self._segment.segment_id)
            return
        self._segment_seq += 1
        settings = self._settings_in_use
        segment = Segment(
            segment_id=self._segment_seq,
            language=settings.language,
            silence_timeout_s=settings.silence_timeout_s,
        )
        self._segment = segment
        self._transition(SupervisorState.STARTING)
        self._timers.session.arm(self._timings.session_timeout_s)
        try:
            self._engine.start(
                segment.language,
                segment.silence_timeout_s,
                self._engine_callback(segment.segment_id),
            )
        except Exception as exc:
            logger.warning("Engine start failed: %s", exc)
            self._fail(self._classifier.classify(ENGINE_UNAVAILABLE))

    def _end_segment(self) -> None:
        segment = self._segment
        if segment is None:
            return
        self._segment = None
        self._partial_text = ""
        try:
            self._engine.stop()
        except Exception as exc:
            logger.warning("Engine stop failed for segment %d: %s", segment.segment_id, exc)

    def _schedule_restart(self) -> None:
        self._timers.session.cancel()
        self._transition(SupervisorState.AWAITING_RESTART)
        self._timers.restart.arm(self._timings.restart_delay_s)

    def _finish_single(self) -> None:
        self._transition(SupervisorState.STOPPING)
        self._timers.cancel_all()
        self._end_segment()
        self._transition(SupervisorState.IDLE)

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    def _handle_engine_signal(self, signal: EngineSignal) -> None:
        segment = self._segment
        if segment is None or segment.segment_id != signal.segment_id:
            logger.debug("Dropping %s from stale segment %d", signal.event.kind.value, signal.segment_id)
            return

        event = signal.event
        kind = event.kind
        if kind is EngineEventKind.READY:
            if self._state is SupervisorState.STARTING:
                self._is_listening = True
                self._transition(SupervisorState.LISTENING)
        elif kind is EngineEventKind.SPEECH_STARTED:
            self._timers.session.cancel()
            if self._conversation_mode:
                self._timers.conversation.extend(self._timings.conversation_timeout_s)
        elif kind is EngineEventKind.SPEECH_ENDED:
            self._timers.session.arm(self._timings.session_timeout_s)
        elif kind is EngineEventKind.PARTIAL:
            self._partial_text = event.text
        elif kind is EngineEventKind.VOLUME:
            self._volume_level = min(1.0, max(0.0, event.level))
        elif kind is EngineEventKind.FINAL:
            self._handle_final(event.text)
        elif kind is EngineEventKind.ERROR:
            self._handle_error(self._classifier.classify(event.code, event.message))

    def _handle_final(self, text: str) -> None:
        self._end_segment()
        if is_displayable(text):
            self._sink.append(TranscriptLine(text=text.strip()))
        else:
            logger.debug("Final result without speech")
        if self._conversation_mode:
            self._timers.conversation.extend(self._timings.conversation_timeout_s)
            self._schedule_restart()
        else:
            self._finish_single()

    def _handle_error(self, error: ErrorKind) -> None:
        if not error.recoverable:
            self._fail(error)
            return
        logger.info("Recoverable engine error %s: %s", error.code, error.message)
        self._end_segment()
        if self._conversation_mode:
            self._schedule_restart()
        else:
            self._finish_single()

    def _fail(self, error: ErrorKind) -> None:
        logger.warning("Fatal engine error %s: %s", error.code, error.message)
        self._conversation_mode = False
        self._timers.cancel_all()
        self._end_segment()
        self._sink.append(TranscriptLine(text=format_error_line(error), is_error=True))
        self._transition(SupervisorState.IDLE)

    def _recover(self) -> None:
        self._conversation_mode = False
        self._timers.cancel_all()
        self._segment = None
        try:
            self._engine.stop()
        except Exception as exc:
            logger.warning("Engine stop failed during recovery: %s", exc)
        try:
            self._sink.append(
                TranscriptLine(
                    text=format_error_line(self._classifier.classify(ERROR_CLIENT)),
                    is_error=True,
                )
            )
        except Exception:
            logger.exception("Could not record supervisor failure")
        self._transition(SupervisorState.IDLE)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _handle_timer(self, fired: TimerFired) -> None:
        timer = self._timers.get(fired.name)
        if not timer.consume(fired.token):
            logger.debug("Dropping stale %s timer firing", fired.name)
            return

        if fired.name == RESTART:
            if self._state is SupervisorState.AWAITING_RESTART and self._conversation_mode:
                self._start_segment()
        elif fired.name == SESSION:
            if self._state not in (SupervisorState.STARTING, SupervisorState.LISTENING):
                return
            if self._conversation_mode:
                logger.info("Session window expired, restarting segment")
                self._end_segment()
                self._schedule_restart()
            else:
                self._finish_single()
        elif fired.name == CONVERSATION:
            if self._state is not SupervisorState.IDLE:
                logger.info("No speech for %ss, leaving conversation mode", self._timings.conversation_timeout_s)
                self._stop_all("conversation timeout")

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def _transition(self, to_state: SupervisorState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if to_state is SupervisorState.STARTING:
            self._is_listening = False
        elif to_state is SupervisorState.IDLE:
            self._is_listening = False
            self._volume_level = 0.0
            self._partial_text = ""
        logger.info("State %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            try:
                self._on_state_change(from_state, to_state)
            except Exception:
                logger.exception("State observer failed")

    def _publish_status(self) -> None:
        status = self.status
        if status == self._last_status:
            return
        self._last_status = status
        if self._on_status:
            try:
                self._on_status(status)
            except Exception:
                logger.exception("Status observer failed")
