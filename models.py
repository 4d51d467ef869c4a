"""Core data models for the app."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


class MicState(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"


class SupervisorState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    LISTENING = "LISTENING"
    AWAITING_RESTART = "AWAITING_RESTART"
    STOPPING = "STOPPING"


class EngineEventKind(str, Enum):
    READY = "ready"
    SPEECH_STARTED = "speech_started"
    SPEECH_ENDED = "speech_ended"
    PARTIAL = "partial"
    FINAL = "final"
    VOLUME = "volume"
    ERROR = "error"


class ErrorSeverity(str, Enum):
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass
class EngineEvent:
    kind: EngineEventKind
    text: str = ""
    level: float = 0.0
    code: str = ""
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind in (EngineEventKind.FINAL, EngineEventKind.ERROR)


@dataclass(frozen=True)
class ErrorKind:
    severity: ErrorSeverity
    code: str
    message: str

    @property
    def recoverable(self) -> bool:
        return self.severity is ErrorSeverity.RECOVERABLE


@dataclass(frozen=True)
class Segment:
    segment_id: int
    language: str
    silence_timeout_s: float
    started_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class TranscriptLine:
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    is_error: bool = False


@dataclass(frozen=True)
class UiSnapshot:
    transcript_lines: tuple[TranscriptLine, ...] = ()
    mic_state: MicState = MicState.IDLE
    is_listening: bool = False
    is_connected: bool = True
    volume_level: float = 0.0
    partial_text: str = ""
    supervisor_state: SupervisorState = SupervisorState.IDLE
