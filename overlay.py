"""Overlay window showing the live transcript."""

from __future__ import annotations

try:
    from PySide6.QtCore import Qt, QTimer
    from PySide6.QtWidgets import QApplication, QLabel, QWidget, QVBoxLayout
except Exception:  # pragma: no cover
    Qt = None  # type: ignore
    QTimer = None  # type: ignore
    QApplication = None  # type: ignore
    QLabel = object  # type: ignore
    QWidget = object  # type: ignore
    QVBoxLayout = object  # type: ignore

_TEXT_STYLE = (
    "color: white; font-size: 18px; padding: 16px;"
    "background: rgba(0,0,0,190); border-radius: 12px;"
)
_STATUS_STYLE = "color: #BBBBBB; font-size: 12px; padding: 4px 16px;"
_ERROR_STYLE = (
    "color: #FF6B6B; font-size: 14px; padding: 8px 16px;"
    "background: rgba(0,0,0,210); border-radius: 8px;"
)


class OverlayWindow(QWidget):
    """Transcript on top, session status below, transient fault line."""

    def __init__(self) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowFlags(
            Qt.WindowStaysOnTopHint | Qt.FramelessWindowHint | Qt.Tool
        )
        self.setAttribute(Qt.WA_TranslucentBackground, True)
        self.setFixedWidth(720)

        self._text = QLabel("")
        self._text.setWordWrap(True)
        self._text.setStyleSheet(_TEXT_STYLE)
        self._status = QLabel("")
        self._status.setStyleSheet(_STATUS_STYLE)
        self._error = QLabel("")
        self._error.setWordWrap(True)
        self._error.setStyleSheet(_ERROR_STYLE)
        self._error.hide()

        layout = QVBoxLayout()
        layout.setContentsMargins(0, 0, 0, 0)
        layout.addWidget(self._text)
        layout.addWidget(self._status)
        layout.addWidget(self._error)
        self.setLayout(layout)

        self._error_timer: QTimer | None = None

    def _center_top(self) -> None:
        if QApplication is None:
            return
        screen = QApplication.primaryScreen()
        if screen is None:
            return
        geom = screen.availableGeometry()
        self.adjustSize()
        x = geom.x() + (geom.width() - self.width()) // 2
        y = geom.y() + 40
        self.move(x, y)

    def set_transcript(self, text: str) -> None:
        self._text.setText(text.strip() or "…")
        self._center_top()
        self.show()

    def set_status(self, text: str) -> None:
        self._status.setText(text)

    def show_error(self, text: str, hide_after_ms: int = 4000) -> None:
        self._error.setText(f"⚠️ {text}")
        self._error.show()
        self._center_top()
        self.show()
        if self._error_timer is not None:
            self._error_timer.stop()
        self._error_timer = QTimer()
        self._error_timer.setSingleShot(True)
        self._error_timer.timeout.connect(self._error.hide)
        self._error_timer.start(hide_after_ms)
