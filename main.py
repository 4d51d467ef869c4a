"""Application entrypoint."""

from __future__ import annotations

import logging
import sys

from config import JsonConfigStore
from connectivity import HttpConnectivityMonitor
from hotkey import GlobalHotkeyAdapter
from interfaces import ConfigStore
from logging_utils import setup_logging
from models import MicState, UiSnapshot
from overlay import OverlayWindow
from projector import UiStateProjector
from recognizer import DashscopeEngineAdapter
from supervisor import SessionSupervisor
from transcript import TranscriptStore

try:
    from PySide6.QtCore import QObject, Signal, QSize
    from PySide6.QtGui import QAction, QIcon, QPixmap, QPainter, QColor, QBrush
    from PySide6.QtWidgets import QApplication, QInputDialog, QMenu, QMessageBox, QSystemTrayIcon
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger(__name__)


def _create_icon(color: str = "#888888", size: int = 22) -> QIcon:
    """Generate a simple circular tray icon with the given color."""
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))  # transparent background
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


ICON_IDLE = "#888888"       # grey
ICON_LISTENING = "#FF4444"  # red
ICON_OFFLINE = "#FF8800"    # orange


class UIBridge(QObject):
    snapshot_signal = Signal(object)


class App:
    def __init__(self) -> None:
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.config_store: ConfigStore = JsonConfigStore()
        self.overlay = OverlayWindow()
        self.ui = UIBridge()
        self.ui.snapshot_signal.connect(self._render)

        self.transcript = TranscriptStore()
        self.connectivity = HttpConnectivityMonitor()
        self.projector = UiStateProjector(self.transcript, self.connectivity)
        self.engine = DashscopeEngineAdapter(api_key=self.config_store.get_api_key())
        self.supervisor = SessionSupervisor(
            engine=self.engine,
            sink=self.transcript,
            settings=self.config_store.recognition_settings,
            on_status=self.projector.on_supervisor_status,
        )
        self.hotkey = GlobalHotkeyAdapter(hotkey_name=self.config_store.get_hotkey())

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_IDLE))
        self.tray.setToolTip("Captions — Mic off")
        self.tray.activated.connect(self._on_tray_activated)
        self._toggle_action: QAction | None = None
        self._setup_menu()
        self.tray.show()

    def _setup_menu(self) -> None:
        menu = QMenu()

        self._toggle_action = QAction("Start listening", menu)
        self._toggle_action.triggered.connect(self.supervisor.tap_mic)
        menu.addAction(self._toggle_action)

        clear_action = QAction("Clear transcript", menu)
        clear_action.triggered.connect(self.supervisor.clear_transcript)
        menu.addAction(clear_action)

        menu.addSeparator()

        api_action = QAction("Set API Key", menu)
        api_action.triggered.connect(self._set_api_key)
        menu.addAction(api_action)

        language_action = QAction("Set Language", menu)
        language_action.triggered.connect(self._set_language)
        menu.addAction(language_action)

        silence_action = QAction("Set Silence Timeout", menu)
        silence_action.triggered.connect(self._set_silence_timeout)
        menu.addAction(silence_action)

        menu.addSeparator()
        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self.quit)
        menu.addAction(quit_action)

        self.tray.setContextMenu(menu)

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(None, "API Key", "DashScope API Key")
        if not ok:
            return
        self.config_store.set_api_key(value)
        self.engine.set_api_key(value)
        QMessageBox.information(None, "Saved", "API Key saved and applied.")

    def _set_language(self) -> None:
        value, ok = QInputDialog.getText(
            None, "Language", "Recognition language, e.g. en-US", text=self.config_store.get_language()
        )
        if not ok:
            return
        try:
            self.config_store.set_language(value)
        except ValueError as exc:
            QMessageBox.warning(None, "Invalid", str(exc))
            return
        QMessageBox.information(None, "Saved", "Language applies from the next conversation.")

    def _set_silence_timeout(self) -> None:
        value, ok = QInputDialog.getInt(
            None,
            "Silence Timeout",
            "Seconds of silence before a caption is finalized",
            self.config_store.get_silence_timeout_seconds(),
            1,
            600,
        )
        if not ok:
            return
        self.config_store.set_silence_timeout_seconds(value)
        QMessageBox.information(None, "Saved", "Timeout applies from the next conversation.")

    def _on_tray_activated(self, reason: QSystemTrayIcon.ActivationReason) -> None:
        if reason == QSystemTrayIcon.Trigger:
            self.supervisor.tap_mic()

    # ------------------------------------------------------------------
    # Snapshot updates arrive on any thread and reach the UI thread through a signal
    # ------------------------------------------------------------------

    def _on_snapshot(self, snapshot: UiSnapshot) -> None:
        self.ui.snapshot_signal.emit(snapshot)

    def _render(self, snapshot: UiSnapshot) -> None:
        listening = snapshot.mic_state is MicState.LISTENING
        if not snapshot.is_connected:
            color = ICON_OFFLINE
        else:
            color = ICON_LISTENING if listening else ICON_IDLE
        self.tray.setIcon(_create_icon(color))
        self.tray.setToolTip("Captions — Listening" if listening else "Captions — Mic off")
        if self._toggle_action is not None:
            self._toggle_action.setText("Stop listening" if listening else "Start listening")
        self.overlay.render(snapshot)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        self.projector.subscribe(self._on_snapshot)
        self.connectivity.start()
        try:
            self.hotkey.start(on_toggle=self.supervisor.tap_mic)
        except Exception as exc:
            logger.warning("Hotkey disabled: %s", exc)
            self.tray.showMessage("Captions", f"Hotkey disabled: {exc}")
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.supervisor.shutdown()
        self.connectivity.stop()
        self.projector.close()
        self.app.quit()


def main() -> int:
    log_path = setup_logging()
    logger.info("Logging to %s", log_path)
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
