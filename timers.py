"""Cancellable countdown timers feeding the supervisor event queue."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from interfaces import Cancellable, Scheduler

logger = logging.getLogger(__name__)

TimerFiredCallback = Callable[[str, int], None]

SESSION = "session"
CONVERSATION = "conversation"
RESTART = "restart"


class ThreadingScheduler:
    """Runs callbacks on daemon ``threading.Timer`` threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: set[threading.Timer] = set()
        self._closed = False

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> Cancellable:
        timer: threading.Timer

        def _run() -> None:
            with self._lock:
                self._timers.discard(timer)
            callback()

        timer = threading.Timer(max(0.0, delay_s), _run)
        timer.daemon = True
        with self._lock:
            if self._closed:
                return timer
            self._timers.add(timer)
        timer.start()
        return timer

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class CountdownTimer:
    """One owned countdown handle.

    Every ``arm`` issues a fresh token. A firing is only reported while its
    token is still the live one, and ``consume`` lets the receiver check a
    queued firing against the current token, so a firing that raced with
    ``cancel`` or a re-arm is inert. ``cancel`` on an idle timer does
    nothing.
    """

    def __init__(self, name: str, scheduler: Scheduler, on_fire: TimerFiredCallback) -> None:
        self.name = name
        self._scheduler = scheduler
        self._on_fire = on_fire
        self._lock = threading.Lock()
        self._handle: Optional[Cancellable] = None
        self._token = 0
        self._live_token: Optional[int] = None

    @property
    def armed(self) -> bool:
        return self._live_token is not None

    def arm(self, delay_s: float) -> int:
        with self._lock:
            self._cancel_locked()
            self._token += 1
            token = self._token
            self._live_token = token
            self._handle = self._scheduler.call_later(delay_s, lambda: self._fire(token))
        logger.debug("Timer %s armed for %.3fs (token %d)", self.name, delay_s, token)
        return token

    def extend(self, delay_s: float) -> bool:
        """Re-arm unless a firing is already on its way to the receiver."""
        with self._lock:
            if self._live_token is not None and self._handle is None:
                return False
        self.arm(delay_s)
        return True

    def cancel(self) -> bool:
        with self._lock:
            return self._cancel_locked()

    def consume(self, token: int) -> bool:
        with self._lock:
            if self._live_token != token:
                return False
            self._live_token = None
            self._handle = None
            return True

    def _fire(self, token: int) -> None:
        with self._lock:
            if self._live_token != token:
                return
            self._handle = None
        self._on_fire(self.name, token)

    def _cancel_locked(self) -> bool:
        if self._live_token is None:
            return False
        handle = self._handle
        self._live_token = None
        self._handle = None
        if handle is not None:
            handle.cancel()
        return True


class TimerSet:
    """Session, conversation and restart countdowns of one supervisor.

    The per-segment silence timeout lives inside the engine and is only
    passed through on ``start``.
    """

    def __init__(self, scheduler: Scheduler, on_fire: TimerFiredCallback) -> None:
        self.session = CountdownTimer(SESSION, scheduler, on_fire)
        self.conversation = CountdownTimer(CONVERSATION, scheduler, on_fire)
        self.restart = CountdownTimer(RESTART, scheduler, on_fire)

    def __iter__(self):
        return iter((self.session, self.conversation, self.restart))

    def get(self, name: str) -> CountdownTimer:
        for timer in self:
            if timer.name == name:
                return timer
        raise KeyError(name)

    @property
    def any_armed(self) -> bool:
        return any(timer.armed for timer in self)

    def cancel_all(self) -> int:
        return sum(1 for timer in self if timer.cancel())
