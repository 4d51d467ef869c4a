"""Combines supervisor, connectivity and transcript state into one UI snapshot."""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Callable, Optional, Sequence

from interfaces import ConnectivityMonitor, TranscriptSink
from models import TranscriptLine, UiSnapshot
from supervisor import SupervisorStatus

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[UiSnapshot], None]


class UiStateProjector:
    """Observable ``UiSnapshot`` for the rendering layer.

    Pass ``on_supervisor_status`` as the supervisor's ``on_status`` callback.
    Subscribers get the current snapshot immediately and then every change.
    """

    def __init__(
        self,
        transcript: TranscriptSink,
        connectivity: Optional[ConnectivityMonitor] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[SnapshotCallback] = []
        self._snapshot = UiSnapshot(
            transcript_lines=tuple(transcript.lines),
            is_connected=connectivity.is_connected if connectivity is not None else True,
        )
        self._unsubscribers = [transcript.subscribe(self._on_transcript)]
        if connectivity is not None:
            self._unsubscribers.append(connectivity.subscribe(self._on_connectivity))

    @property
    def snapshot(self) -> UiSnapshot:
        return self._snapshot

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)
            current = self._snapshot
        callback(current)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def on_supervisor_status(self, status: SupervisorStatus) -> None:
        self._update(
            mic_state=status.mic_state,
            is_listening=status.is_listening,
            volume_level=status.volume_level,
            partial_text=status.partial_text,
            supervisor_state=status.state,
        )

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_transcript(self, lines: Sequence[TranscriptLine]) -> None:
        self._update(transcript_lines=tuple(lines))

    def _on_connectivity(self, connected: bool) -> None:
        self._update(is_connected=connected)

    def _update(self, **changes: Any) -> None:
        with self._lock:
            snapshot = dataclasses.replace(self._snapshot, **changes)
            if snapshot == self._snapshot:
                return
            self._snapshot = snapshot
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed")
