"""Caption overlay rendering the latest transcript lines."""

from __future__ import annotations

from models import MicState, UiSnapshot

try:
    from PySide6.QtCore import Qt
    from PySide6.QtWidgets import QApplication, QLabel, QProgressBar, QVBoxLayout, QWidget
except Exception:  # pragma: no cover
    Qt = None  # type: ignore
    QApplication = None  # type: ignore
    QLabel = object  # type: ignore
    QProgressBar = object  # type: ignore
    QVBoxLayout = object  # type: ignore
    QWidget = object  # type: ignore

VISIBLE_LINES = 4

_LINE_STYLE = "color: white; font-size: 26px; padding: 4px 16px;"
_ERROR_STYLE = "color: #FF6B6B; font-size: 26px; padding: 4px 16px;"
_PARTIAL_STYLE = "color: #BBBBBB; font-size: 22px; font-style: italic; padding: 4px 16px;"
_STATUS_STYLE = "color: #DDDDDD; font-size: 14px; padding: 4px 16px;"


def caption_lines(snapshot: UiSnapshot, limit: int = VISIBLE_LINES) -> list[tuple[str, bool]]:
    """Latest transcript lines as ``(text, is_error)``, oldest first."""
    return [(line.text, line.is_error) for line in snapshot.transcript_lines[-limit:]]


def status_text(snapshot: UiSnapshot) -> str:
    if snapshot.mic_state is MicState.IDLE:
        status = "Mic off"
    elif snapshot.is_listening:
        status = "🎙️ Listening..."
    else:
        status = "Starting..."
    if not snapshot.is_connected:
        status += "  ·  offline"
    return status


class OverlayWindow(QWidget):
    def __init__(self) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowFlags(
            Qt.WindowStaysOnTopHint | Qt.FramelessWindowHint | Qt.Tool
        )
        self.setAttribute(Qt.WA_TranslucentBackground, True)
        self.setStyleSheet("background: rgba(0,0,0,200); border-radius: 12px;")
        self.setFixedWidth(900)

        self._status = QLabel("")
        self._status.setStyleSheet(_STATUS_STYLE)

        self._volume = QProgressBar()
        self._volume.setRange(0, 100)
        self._volume.setTextVisible(False)
        self._volume.setFixedHeight(6)

        self._lines = [QLabel("") for _ in range(VISIBLE_LINES)]
        for label in self._lines:
            label.setWordWrap(True)
            label.setStyleSheet(_LINE_STYLE)

        self._partial = QLabel("")
        self._partial.setWordWrap(True)
        self._partial.setStyleSheet(_PARTIAL_STYLE)

        layout = QVBoxLayout()
        layout.setContentsMargins(8, 8, 8, 8)
        layout.addWidget(self._status)
        layout.addWidget(self._volume)
        for label in self._lines:
            layout.addWidget(label)
        layout.addWidget(self._partial)
        self.setLayout(layout)

    def _place_bottom(self) -> None:
        """Position the window at the bottom center of the primary screen."""
        if QApplication is None:
            return
        screen = QApplication.primaryScreen()
        if screen is None:
            return
        geom = screen.availableGeometry()
        self.adjustSize()
        x = geom.x() + (geom.width() - self.width()) // 2
        y = geom.y() + geom.height() - self.height() - 60
        self.move(x, y)

    def render(self, snapshot: UiSnapshot) -> None:
        self._status.setText(status_text(snapshot))
        self._volume.setValue(int(snapshot.volume_level * 100))

        rows = caption_lines(snapshot)
        padded = [("", False)] * (VISIBLE_LINES - len(rows)) + rows
        for label, (text, is_error) in zip(self._lines, padded):
            label.setText(text)
            label.setStyleSheet(_ERROR_STYLE if is_error else _LINE_STYLE)
            label.setVisible(bool(text))

        self._partial.setText(snapshot.partial_text)
        self._partial.setVisible(bool(snapshot.partial_text))

        if snapshot.mic_state is MicState.LISTENING or rows:
            self._place_bottom()
            self.show()
        else:
            self.hide()
