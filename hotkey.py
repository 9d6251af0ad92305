"""Press-to-toggle hotkey that starts and stops transcription."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore

logger = logging.getLogger(__name__)


class GlobalHotkeyAdapter:
    """Calls ``on_toggle`` on each fresh press of one system-wide key.

    ``hotkey_name`` is pynput's ``str(key)`` form, e.g. ``Key.alt_r`` or
    ``'t'``. Auto-repeat from a held key is ignored until the key is released.
    """

    def __init__(self, hotkey_name: str = "Key.alt_r") -> None:
        self.hotkey_name = hotkey_name
        self._on_toggle: Optional[Callable[[], None]] = None
        self._listener: Any = None
        self._down = False

    @property
    def listening(self) -> bool:
        return self._listener is not None

    def start(self, on_toggle: Callable[[], None]) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        if self._listener is not None:
            return
        self._on_toggle = on_toggle
        self._listener = keyboard.Listener(on_press=self._key_down, on_release=self._key_up)
        self._listener.start()
        logger.info("Toggle hotkey: %s", self.hotkey_name)

    def stop(self) -> None:
        listener, self._listener = self._listener, None
        self._down = False
        if listener is not None:
            listener.stop()

    # pynput delivers both handlers on its single listener thread.
    def _key_down(self, key: Any) -> None:
        if self._down or not self._is_hotkey(key):
            return
        self._down = True
        logger.debug("Hotkey pressed")
        if self._on_toggle is not None:
            self._on_toggle()

    def _key_up(self, key: Any) -> None:
        if self._is_hotkey(key):
            self._down = False

    def _is_hotkey(self, key: Any) -> bool:
        return key is not None and str(key) == self.hotkey_name
