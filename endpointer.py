"""Energy based speech endpointing for microphone frames."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from models import AudioFrame, EngineEvent, EngineEventKind

FLOOR_DBFS = -60.0


def frame_dbfs(frame: AudioFrame) -> float:
    samples = np.frombuffer(frame.pcm16_bytes, dtype=np.int16)
    if samples.size == 0:
        return FLOOR_DBFS
    rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))
    if rms <= 0.0:
        return FLOOR_DBFS
    return max(FLOOR_DBFS, 20.0 * math.log10(rms / 32768.0))


def frame_duration_s(frame: AudioFrame) -> float:
    bytes_per_second = frame.sample_rate * frame.channels * 2
    if bytes_per_second <= 0:
        return 0.0
    return len(frame.pcm16_bytes) / bytes_per_second


def dbfs_to_level(dbfs: float) -> float:
    return min(1.0, max(0.0, (dbfs - FLOOR_DBFS) / -FLOOR_DBFS))


@dataclass
class EndpointerConfig:
    speech_threshold_dbfs: float = -40.0
    min_speech_s: float = 0.15
    # Upper bound on audio after speech starts; the model rejects long clips.
    max_segment_s: float = 60.0


class EnergyEndpointer:
    """Tracks speech/silence over a segment using frame energy.

    Time is measured in audio duration, not wall clock. The segment is
    complete once ``silence_timeout_s`` of silence follows detected speech;
    it times out if no speech starts within ``silence_timeout_s``. Speech
    that never pauses still completes the segment once ``max_segment_s``
    of audio has passed since it started, with ``capped`` set.
    """

    def __init__(self, silence_timeout_s: float, config: EndpointerConfig | None = None) -> None:
        self._silence_timeout_s = silence_timeout_s
        self._config = config or EndpointerConfig()
        self._in_speech = False
        self._heard_speech = False
        self._voiced_s = 0.0
        self._silence_s = 0.0
        self._segment_s = 0.0
        self.complete = False
        self.timed_out = False
        self.capped = False

    @property
    def heard_speech(self) -> bool:
        return self._heard_speech

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def process(self, frame: AudioFrame) -> list[EngineEvent]:
        dbfs = frame_dbfs(frame)
        duration = frame_duration_s(frame)
        events = [EngineEvent(kind=EngineEventKind.VOLUME, level=dbfs_to_level(dbfs))]

        if dbfs >= self._config.speech_threshold_dbfs:
            self._voiced_s += duration
            self._silence_s = 0.0
            if not self._in_speech and self._voiced_s >= self._config.min_speech_s:
                self._in_speech = True
                self._heard_speech = True
                events.append(EngineEvent(kind=EngineEventKind.SPEECH_STARTED))
        else:
            self._voiced_s = 0.0
            self._silence_s += duration
            if self._in_speech:
                self._in_speech = False
                events.append(EngineEvent(kind=EngineEventKind.SPEECH_ENDED))

        if self._heard_speech:
            self._segment_s += duration
            if self._segment_s >= self._config.max_segment_s:
                self.complete = True
                self.capped = True
        if self._silence_s >= self._silence_timeout_s:
            if self._heard_speech:
                self.complete = True
            else:
                self.timed_out = True
        return events
