"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Optional, Sequence

from capture_session import InterruptionChannel
from config import JsonConfigStore, PipelineConfig
from errors import PipelineError
from hotkey import GlobalHotkeyAdapter
from models import Fault, SessionState, Transcript
from permission import PermissionGate
from pipeline import TranscriptionPipeline
from overlay import OverlayWindow
from recorder import (
    SoundDeviceBackend,
    list_input_devices,
    probe_microphone_access,
    prompt_microphone_access,
)
from whisper_models import WhisperModelProvider, WhisperTokenizer

try:
    from PySide6.QtCore import QObject, QSize, Signal
    from PySide6.QtGui import QAction, QBrush, QColor, QIcon, QPainter, QPixmap
    from PySide6.QtWidgets import QApplication, QInputDialog, QMenu, QMessageBox, QSystemTrayIcon
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger(__name__)

ICON_IDLE = "#888888"      # grey
ICON_RECORDING = "#FF4444"  # red
ICON_PAUSED = "#FFCC00"    # yellow
ICON_ERROR = "#FF8800"     # orange


def _create_icon(color: str = ICON_IDLE, size: int = 22) -> QIcon:
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


def build_pipeline(
    store: JsonConfigStore,
    model: Optional[str] = None,
    device: Optional[int] = None,
    config: Optional[PipelineConfig] = None,
) -> TranscriptionPipeline:
    config = config or store.load_pipeline_config()
    provider = WhisperModelProvider(model or store.get_model(), sample_rate=config.target_rate)
    return TranscriptionPipeline(
        backend=SoundDeviceBackend(blocksize=config.blocksize),
        model_provider=provider,
        tokenizer=_LazyTokenizer(provider),
        permission=PermissionGate(prompt_microphone_access, probe_microphone_access),
        config=config,
        interruptions=InterruptionChannel(),
        route=device if device is not None else store.get_device(),
    )


class _LazyTokenizer:
    """Defers tokenizer loading until the first decode."""

    def __init__(self, provider: WhisperModelProvider) -> None:
        self._provider = provider
        self._tokenizer: Optional[WhisperTokenizer] = None

    def decode(self, tokens: Sequence[int]) -> str:
        if self._tokenizer is None:
            self._tokenizer = self._provider.load_tokenizer()
        return self._tokenizer.decode(tokens)


def _run_in_background(fn, *args) -> None:  # noqa: ANN001
    def _target() -> None:
        try:
            fn(*args)
        except PipelineError as exc:
            # Already published on the fault bus.
            logger.debug("background call failed: %s", exc)

    threading.Thread(target=_target, daemon=True).start()


def run_console(pipeline: TranscriptionPipeline) -> int:
    done = threading.Event()

    def _on_transcript(transcript: Transcript) -> None:
        text = transcript.text.strip()
        if text:
            print(text, flush=True)

    def _on_fault(fault: Fault) -> None:
        print(f"[{fault.kind.value}] {fault.describe()}", file=sys.stderr, flush=True)
        if fault.fatal:
            done.set()

    pipeline.transcript.subscribe(_on_transcript)
    pipeline.faults.subscribe(_on_fault)
    signal.signal(signal.SIGINT, lambda *_: done.set())

    try:
        pipeline.start()
    except PipelineError:
        return 1
    done.wait()
    pipeline.finish()
    pipeline.close()
    logger.info("Stats: %s", pipeline.stats())
    return 0


class UIBridge(QObject):
    transcript_signal = Signal(str)
    fault_signal = Signal(str, bool)
    state_signal = Signal(str)
    toggle_signal = Signal()


class TrayApp:
    def __init__(self, pipeline: TranscriptionPipeline, store: JsonConfigStore) -> None:
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.pipeline = pipeline
        self.store = store
        self.overlay = OverlayWindow()
        self.ui = UIBridge()
        self.ui.transcript_signal.connect(self.overlay.set_transcript)
        self.ui.fault_signal.connect(self._on_fault_ui)
        self.ui.state_signal.connect(self._on_state_ui)
        self.ui.toggle_signal.connect(self._toggle)

        # Observer callbacks arrive on worker threads; hop to the Qt thread.
        pipeline.transcript.subscribe(lambda t: self.ui.transcript_signal.emit(t.text))
        pipeline.faults.subscribe(lambda f: self.ui.fault_signal.emit(f.describe(), f.fatal))
        pipeline.session_state.subscribe(lambda s: self.ui.state_signal.emit(s.value))

        self.hotkey = GlobalHotkeyAdapter(hotkey_name=store.get_hotkey())
        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_IDLE))
        self.tray.setToolTip("Glint — Ready")
        self._setup_menu()
        self.tray.show()

    def _setup_menu(self) -> None:
        menu = QMenu()

        self.toggle_action = QAction("Start", menu)
        self.toggle_action.triggered.connect(self._toggle)
        menu.addAction(self.toggle_action)

        self.pause_action = QAction("Pause", menu)
        self.pause_action.setEnabled(False)
        self.pause_action.triggered.connect(self._pause_or_resume)
        menu.addAction(self.pause_action)

        model_action = QAction("Set Model", menu)
        model_action.triggered.connect(self._set_model)
        menu.addAction(model_action)

        menu.addSeparator()
        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self.quit)
        menu.addAction(quit_action)

        self.tray.setContextMenu(menu)

    def _toggle(self) -> None:
        if self.pipeline.running:
            _run_in_background(self.pipeline.stop)
        else:
            self.overlay.set_transcript("🎙️ Listening...")
            _run_in_background(self.pipeline.start)

    def _pause_or_resume(self) -> None:
        # Manual pause goes through the same path as a platform interruption.
        if self.pipeline.session_state.get() == SessionState.INTERRUPTED:
            _run_in_background(self.pipeline.interrupt_end, True)
        else:
            _run_in_background(self.pipeline.interrupt_begin)

    def _set_model(self) -> None:
        value, ok = QInputDialog.getText(None, "Model", "Hugging Face Whisper checkpoint")
        if not ok or not value:
            return
        self.store.set_model(value)
        QMessageBox.information(None, "Saved", "Model saved. Restart app to apply.")

    # ------------------------------------------------------------------
    # UI thread handlers (safe for Qt)
    # ------------------------------------------------------------------

    def _on_state_ui(self, state: str) -> None:
        active = state in (SessionState.RUNNING.value, SessionState.INTERRUPTED.value)
        self.toggle_action.setText("Stop" if active else "Start")
        self.pause_action.setEnabled(active)
        self.pause_action.setText("Resume" if state == SessionState.INTERRUPTED.value else "Pause")
        if state == SessionState.RUNNING.value:
            self.tray.setIcon(_create_icon(ICON_RECORDING))
            self.tray.setToolTip("Glint — Recording...")
        elif state == SessionState.INTERRUPTED.value:
            self.tray.setIcon(_create_icon(ICON_PAUSED))
            self.tray.setToolTip("Glint — Paused")
        elif state == SessionState.FAILED.value:
            self.tray.setIcon(_create_icon(ICON_ERROR))
        else:
            self.tray.setIcon(_create_icon(ICON_IDLE))
            self.tray.setToolTip("Glint — Ready")
        self.overlay.set_status(state.lower())

    def _on_fault_ui(self, message: str, fatal: bool) -> None:
        self.overlay.show_error(message)
        if fatal:
            self.tray.setIcon(_create_icon(ICON_ERROR))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        try:
            self.hotkey.start(on_toggle=self.ui.toggle_signal.emit)
        except Exception as exc:
            self.overlay.show_error(f"Hotkey disabled: {exc}")
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.pipeline.close()
        self.app.quit()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live microphone transcription with Whisper")
    parser.add_argument("--model", default=None, help="Hugging Face Whisper checkpoint")
    parser.add_argument("--device", type=int, default=None, help="Audio input device")
    parser.add_argument("--list-devices", action="store_true", help="List audio input devices")
    parser.add_argument("--no-ui", action="store_true", help="Print transcripts to stdout")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("transformers").setLevel(logging.ERROR)
    logging.getLogger("huggingface_hub").setLevel(logging.WARNING)

    if args.list_devices:
        for index, name, is_default in list_input_devices():
            print(f"{index:3d}  {name}{'  (default)' if is_default else ''}")
        return 0

    store = JsonConfigStore()
    pipeline = build_pipeline(store, model=args.model, device=args.device)
    if args.no_ui:
        return run_console(pipeline)
    return TrayApp(pipeline, store).run()


if __name__ == "__main__":
    raise SystemExit(main())
