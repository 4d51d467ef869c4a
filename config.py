"""Simple JSON-based config store and the supervisor's fixed timings."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en-US"
DEFAULT_SILENCE_TIMEOUT_S = 60
DEFAULT_HOTKEY = "Key.f9"


@dataclass(frozen=True)
class RecognitionSettings:
    """Per-conversation engine settings, read when a conversation starts."""

    language: str = DEFAULT_LANGUAGE
    silence_timeout_s: int = DEFAULT_SILENCE_TIMEOUT_S


@dataclass(frozen=True)
class SupervisorTimings:
    # Restart before the engine's own ~5 minute session ceiling.
    session_timeout_s: float = 4 * 60.0
    conversation_timeout_s: float = 5 * 60.0
    restart_delay_s: float = 0.05


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "convo_caption" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        data = self._read_all()
        data["api_key"] = key
        self._write_all(data)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", DEFAULT_HOTKEY))

    def set_hotkey(self, hotkey: str) -> None:
        data = self._read_all()
        data["hotkey"] = hotkey
        self._write_all(data)

    def get_language(self) -> str:
        value = self._read_all().get("language")
        if not isinstance(value, str) or not value.strip():
            return DEFAULT_LANGUAGE
        return value.strip()

    def set_language(self, language: str) -> None:
        if not language.strip():
            raise ValueError("Language must not be empty")
        data = self._read_all()
        data["language"] = language.strip()
        self._write_all(data)

    def get_silence_timeout_seconds(self) -> int:
        value = self._read_all().get("silence_timeout_seconds")
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return DEFAULT_SILENCE_TIMEOUT_S
        return value

    def set_silence_timeout_seconds(self, seconds: int) -> None:
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            raise ValueError("Silence timeout must be a positive number")
        data = self._read_all()
        data["silence_timeout_seconds"] = seconds
        self._write_all(data)

    def recognition_settings(self) -> RecognitionSettings:
        return RecognitionSettings(
            language=self.get_language(),
            silence_timeout_s=self.get_silence_timeout_seconds(),
        )

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
