"""Network reachability monitor feeding the UI snapshot."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class HttpConnectivityMonitor:
    """Polls the recognition service over HTTP and reports reachability.

    Any HTTP response below 500 counts as reachable; transport errors and
    timeouts count as offline.
    """

    def __init__(
        self,
        url: str = "https://dashscope.aliyuncs.com",
        interval_s: float = 5.0,
        timeout_s: float = 2.0,
    ) -> None:
        self._url = url
        self._interval_s = interval_s
        self._timeout_s = timeout_s
        self._connected = True
        self._lock = threading.Lock()
        self._subscribers: list[ConnectivityCallback] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self._timeout_s + 0.5)

    def check_now(self) -> bool:
        try:
            response = httpx.head(self._url, timeout=self._timeout_s, follow_redirects=True)
            connected = response.status_code < 500
        except httpx.HTTPError as exc:
            logger.debug("Reachability check failed: %s", exc)
            connected = False
        self._set_connected(connected)
        return connected

    def _worker(self) -> None:
        while not self._stop_event.is_set():
            self.check_now()
            self._stop_event.wait(self._interval_s)

    def _set_connected(self, connected: bool) -> None:
        with self._lock:
            if connected == self._connected:
                return
            self._connected = connected
            subscribers = list(self._subscribers)
        logger.info("Network %s", "reachable" if connected else "unreachable")
        for callback in subscribers:
            try:
                callback(connected)
            except Exception:
                logger.exception("Connectivity subscriber failed")
