"""Shared error codes, user-facing messages and the engine error classifier."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from models import ErrorKind, ErrorSeverity

# Speech engine codes
ERROR_AUDIO = "ERROR_AUDIO"
ERROR_CLIENT = "ERROR_CLIENT"
ERROR_INSUFFICIENT_PERMISSIONS = "ERROR_INSUFFICIENT_PERMISSIONS"
ERROR_NETWORK = "ERROR_NETWORK"
ERROR_NETWORK_TIMEOUT = "ERROR_NETWORK_TIMEOUT"
ERROR_NO_MATCH = "ERROR_NO_MATCH"
ERROR_RECOGNIZER_BUSY = "ERROR_RECOGNIZER_BUSY"
ERROR_SERVER = "ERROR_SERVER"
ERROR_SPEECH_TIMEOUT = "ERROR_SPEECH_TIMEOUT"
ENGINE_UNAVAILABLE = "ENGINE_UNAVAILABLE"

# Cloud backend codes
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"

ERROR_MESSAGES = {
    ERROR_AUDIO: "Audio recording error",
    ERROR_CLIENT: "Client side error",
    ERROR_INSUFFICIENT_PERMISSIONS: "Insufficient permissions",
    ERROR_NETWORK: "Network error",
    ERROR_NETWORK_TIMEOUT: "Network timeout",
    ERROR_NO_MATCH: "No speech input",
    ERROR_RECOGNIZER_BUSY: "RecognitionService busy",
    ERROR_SERVER: "Server error",
    ERROR_SPEECH_TIMEOUT: "No speech input",
    ENGINE_UNAVAILABLE: "Speech recognition not available",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    ASR_PROTOCOL_ERROR: "ASR response format is invalid.",
}

# Placeholder a backend may return instead of a real final result.
NO_SPEECH_PLACEHOLDER = "No speech detected"


class EngineUnavailableError(RuntimeError):
    """Raised by an engine adapter that cannot be created at all."""


@dataclass(frozen=True)
class ErrorRule:
    severity: ErrorSeverity
    message: str


def _rule(code: str, severity: ErrorSeverity) -> ErrorRule:
    return ErrorRule(severity=severity, message=ERROR_MESSAGES[code])


SPEECH_ENGINE_RULES: Mapping[str, ErrorRule] = {
    ERROR_NO_MATCH: _rule(ERROR_NO_MATCH, ErrorSeverity.RECOVERABLE),
    ERROR_SPEECH_TIMEOUT: _rule(ERROR_SPEECH_TIMEOUT, ErrorSeverity.RECOVERABLE),
    ERROR_AUDIO: _rule(ERROR_AUDIO, ErrorSeverity.FATAL),
    ERROR_CLIENT: _rule(ERROR_CLIENT, ErrorSeverity.FATAL),
    ERROR_INSUFFICIENT_PERMISSIONS: _rule(ERROR_INSUFFICIENT_PERMISSIONS, ErrorSeverity.FATAL),
    ERROR_NETWORK: _rule(ERROR_NETWORK, ErrorSeverity.FATAL),
    ERROR_NETWORK_TIMEOUT: _rule(ERROR_NETWORK_TIMEOUT, ErrorSeverity.FATAL),
    ERROR_RECOGNIZER_BUSY: _rule(ERROR_RECOGNIZER_BUSY, ErrorSeverity.FATAL),
    ERROR_SERVER: _rule(ERROR_SERVER, ErrorSeverity.FATAL),
    ENGINE_UNAVAILABLE: _rule(ENGINE_UNAVAILABLE, ErrorSeverity.FATAL),
}

CLOUD_BACKEND_RULES: Mapping[str, ErrorRule] = {
    NETWORK_ERROR: _rule(NETWORK_ERROR, ErrorSeverity.FATAL),
    AUTH_FAILED: _rule(AUTH_FAILED, ErrorSeverity.FATAL),
    ASR_PROTOCOL_ERROR: _rule(ASR_PROTOCOL_ERROR, ErrorSeverity.FATAL),
}


class ErrorClassifier:
    """Maps engine error codes to recoverable or fatal error kinds.

    Lookup is purely table driven. Codes missing from the table are fatal,
    so a new backend can only make the supervisor more conservative until
    its codes are registered.
    """

    def __init__(self, rules: Optional[Mapping[str, ErrorRule]] = None) -> None:
        if rules is None:
            rules = {**SPEECH_ENGINE_RULES, **CLOUD_BACKEND_RULES}
        self._rules = dict(rules)

    def with_rules(self, rules: Mapping[str, ErrorRule]) -> "ErrorClassifier":
        return ErrorClassifier({**self._rules, **rules})

    def classify(self, code: str, detail: str = "") -> ErrorKind:
        rule = self._rules.get(code)
        if rule is None:
            message = detail or f"Unknown error: {code}"
            return ErrorKind(severity=ErrorSeverity.FATAL, code=code, message=message)
        return ErrorKind(severity=rule.severity, code=code, message=rule.message)


def format_error_line(error: ErrorKind) -> str:
    return f"❌ Error: {error.message}"
