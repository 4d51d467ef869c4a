"""Recognition engine adapter using DashScope qwen3-asr-flash.

One ``start`` call is one segment. Microphone frames are endpointed
locally: the adapter reports readiness once the microphone is open, then
speech start/end and volume as they happen. When speech is followed by
``silence_timeout_s`` of silence, the segment audio is converted to WAV
and streamed to the model, partial results flow through ``on_event`` and
the segment ends with exactly one FINAL. A segment that never hears
speech ends with a speech-timeout ERROR instead.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import threading
import wave
from collections import deque
from queue import Empty, Queue
from typing import Optional

from endpointer import EndpointerConfig, EnergyEndpointer
from errors import (
    ASR_PROTOCOL_ERROR,
    AUTH_FAILED,
    ERROR_NO_MATCH,
    ERROR_SPEECH_TIMEOUT,
    NETWORK_ERROR,
    NO_SPEECH_PLACEHOLDER,
    EngineUnavailableError,
)
from interfaces import EngineEventCallback, Recorder
from models import AudioFrame, EngineEvent, EngineEventKind
from recorder import SoundDeviceRecorder

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)

PRE_ROLL_FRAMES = 3


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _language_code(language: str) -> str:
    """``en-US`` -> ``en``; the model takes bare ISO 639-1 codes."""
    return language.replace("_", "-").split("-")[0].lower()


class DashscopeEngineAdapter:
    def __init__(
        self,
        api_key: str,
        recorder: Optional[Recorder] = None,
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
        endpointer_config: Optional[EndpointerConfig] = None,
        queue_maxsize: int = 200,
    ) -> None:
        self._api_key = api_key
        self._recorder = recorder or SoundDeviceRecorder()
        self._model = model
        self._request_timeout_s = request_timeout_s
        self._endpointer_config = endpointer_config
        self._queue_maxsize = queue_maxsize
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def set_api_key(self, api_key: str) -> None:
        """Takes effect from the next recognition request."""
        self._api_key = api_key

    def start(
        self,
        language: str,
        silence_timeout_s: float,
        on_event: EngineEventCallback,
    ) -> None:
        if dashscope is None:
            raise EngineUnavailableError("dashscope is not installed")
        if self._thread and self._thread.is_alive() and not self._stop_event.is_set():
            logger.warning("Segment already running, ignoring start")
            return
        audio_queue: Queue[AudioFrame | None] = Queue(maxsize=self._queue_maxsize)
        self._stop_event = threading.Event()
        self._recorder.start(audio_queue)
        self._thread = threading.Thread(
            target=self._worker,
            args=(audio_queue, language, silence_timeout_s, on_event, self._stop_event),
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        try:
            self._recorder.stop()
        finally:
            thread = self._thread
            if thread and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=0.5)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _worker(
        self,
        audio_queue: Queue[AudioFrame | None],
        language: str,
        silence_timeout_s: float,
        on_event: EngineEventCallback,
        stop_event: threading.Event,
    ) -> None:
        """Endpoint one segment, then recognise it."""
        emit = self._guarded(on_event, stop_event)
        emit(EngineEvent(kind=EngineEventKind.READY))

        endpointer = EnergyEndpointer(silence_timeout_s, self._endpointer_config)
        pre_roll: deque[AudioFrame] = deque(maxlen=PRE_ROLL_FRAMES)
        pcm = bytearray()
        sample_rate = 16000
        channels = 1

        while not stop_event.is_set():
            try:
                frame = audio_queue.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:  # Sentinel
                break
            sample_rate = frame.sample_rate
            channels = frame.channels
            for event in endpointer.process(frame):
                if event.kind is EngineEventKind.SPEECH_STARTED:
                    for buffered in pre_roll:
                        pcm.extend(buffered.pcm16_bytes)
                    pre_roll.clear()
                emit(event)
            if endpointer.heard_speech:
                pcm.extend(frame.pcm16_bytes)
            else:
                pre_roll.append(frame)
            if endpointer.complete or endpointer.timed_out:
                break

        if stop_event.is_set():
            return
        self._recorder.stop()
        if endpointer.capped:
            logger.info("Segment reached its length limit, recognising what was heard")
        if endpointer.in_speech:
            emit(EngineEvent(kind=EngineEventKind.SPEECH_ENDED))

        if endpointer.timed_out:
            emit(EngineEvent(kind=EngineEventKind.ERROR, code=ERROR_SPEECH_TIMEOUT))
            return
        if not pcm:
            emit(EngineEvent(kind=EngineEventKind.ERROR, code=ERROR_NO_MATCH))
            return

        wav_b64 = _pcm_to_wav_base64(bytes(pcm), sample_rate, channels)
        self._recognize_stream(wav_b64, language, emit, stop_event)

    def _recognize_stream(
        self,
        wav_base64: str,
        language: str,
        emit: EngineEventCallback,
        stop_event: threading.Event,
    ) -> None:
        """Send audio to dashscope and stream partial/final results."""
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            emit(
                EngineEvent(
                    kind=EngineEventKind.ERROR,
                    code=AUTH_FAILED,
                    message="No API key configured",
                )
            )
            return

        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": wav_base64}]},
                ],
                result_format="message",
                asr_options={"language": _language_code(language), "enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
        except Exception as exc:
            emit(self._to_error_event(exc))
            return

        latest_text = ""
        try:
            for chunk in response:
                if stop_event.is_set():
                    return
                text = self._extract_text(chunk)
                if text:
                    latest_text = text
                    emit(EngineEvent(kind=EngineEventKind.PARTIAL, text=text))
        except Exception as exc:
            emit(self._to_error_event(exc))
            return

        emit(EngineEvent(kind=EngineEventKind.FINAL, text=latest_text or NO_SPEECH_PLACEHOLDER))

    @staticmethod
    def _guarded(on_event: EngineEventCallback, stop_event: threading.Event) -> EngineEventCallback:
        def _emit(event: EngineEvent) -> None:
            if not stop_event.is_set():
                on_event(event)

        return _emit

    def _extract_text(self, chunk: object) -> str:
        """Pull text from a dashscope streaming chunk dict."""
        if isinstance(chunk, dict):
            output = chunk.get("output", {})
            choices = output.get("choices", [])
            if not choices:
                return ""
            message = choices[0].get("message", {})
            content = message.get("content", [])
            if not content:
                return ""
            value = content[0]
            if isinstance(value, dict):
                return str(value.get("text", ""))
        return ""

    def _to_error_event(self, exc: Exception) -> EngineEvent:
        """Map an SDK/network exception to a standard error event."""
        message = str(exc)
        low = message.lower()
        if "401" in low or "auth" in low or "api key" in low:
            code = AUTH_FAILED
        elif "timeout" in low or "network" in low or "connection" in low:
            code = NETWORK_ERROR
        else:
            code = ASR_PROTOCOL_ERROR
        logger.warning("Recognition request failed (%s): %s", code, message)
        return EngineEvent(kind=EngineEventKind.ERROR, code=code, message=message)

