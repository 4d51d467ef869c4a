"""Append-only transcript store shared with the UI."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Sequence

from models import TranscriptLine

logger = logging.getLogger(__name__)

LinesCallback = Callable[[Sequence[TranscriptLine]], None]


class TranscriptStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lines: tuple[TranscriptLine, ...] = ()
        self._subscribers: list[LinesCallback] = []

    @property
    def lines(self) -> tuple[TranscriptLine, ...]:
        return self._lines

    def append(self, line: TranscriptLine) -> None:
        with self._lock:
            self._lines = self._lines + (line,)
            snapshot = self._lines
        self._notify(snapshot)

    def clear(self) -> None:
        with self._lock:
            if not self._lines:
                return
            self._lines = ()
            snapshot = self._lines
        self._notify(snapshot)

    def subscribe(self, callback: LinesCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, snapshot: tuple[TranscriptLine, ...]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Transcript subscriber failed")
