"""Protocol interfaces used by SessionSupervisor and its collaborators."""

from __future__ import annotations

from queue import Queue
from typing import Callable, Protocol, Sequence

from config import RecognitionSettings
from models import AudioFrame, EngineEvent, TranscriptLine

EngineEventCallback = Callable[[EngineEvent], None]


class Recorder(Protocol):
    def start(self, audio_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self) -> None: ...


class EngineAdapter(Protocol):
    def start(
        self,
        language: str,
        silence_timeout_s: float,
        on_event: EngineEventCallback,
    ) -> None: ...

    def stop(self) -> None: ...


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> Cancellable: ...

    def shutdown(self) -> None: ...


class TranscriptSink(Protocol):
    @property
    def lines(self) -> Sequence[TranscriptLine]: ...

    def append(self, line: TranscriptLine) -> None: ...

    def clear(self) -> None: ...

    def subscribe(self, callback: Callable[[Sequence[TranscriptLine]], None]) -> Callable[[], None]: ...


class ConnectivityMonitor(Protocol):
    @property
    def is_connected(self) -> bool: ...

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]: ...


class ConfigStore(Protocol):
    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_hotkey(self) -> str: ...

    def set_hotkey(self, hotkey: str) -> None: ...

    def get_language(self) -> str: ...

    def set_language(self, language: str) -> None: ...

    def get_silence_timeout_seconds(self) -> int: ...

    def set_silence_timeout_seconds(self, seconds: int) -> None: ...

    def recognition_settings(self) -> RecognitionSettings: ...
