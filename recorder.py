"""Microphone hardware adapter built on sounddevice."""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from interfaces import FinishedCallback, HardwareCallback
from models import PermissionState

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)


class SoundDeviceBackend:
    """Owns one sounddevice InputStream delivering float32 blocks.

    ``sample_rate=None`` opens the stream at the device's native rate, which
    is the configuration the window assembler expects; forcing a different
    rate makes ``processing_rate`` disagree with ``native_rate``.
    """

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        channels: int = 1,
        blocksize: int = 1024,
    ) -> None:
        self._requested_rate = sample_rate
        self._channels = channels
        self.blocksize = blocksize
        self._device: Any = None
        self._native_rate = float(sample_rate or 0)
        self._stream: Any = None
        self._callback: Optional[HardwareCallback] = None
        self._on_finished: Optional[FinishedCallback] = None
        self._stopping = False
        self._lock = threading.Lock()

    @property
    def native_rate(self) -> float:
        return self._native_rate

    @property
    def processing_rate(self) -> float:
        stream = self._stream
        if stream is not None:
            return float(stream.samplerate)
        return float(self._requested_rate or self._native_rate)

    @property
    def channels(self) -> int:
        return self._channels

    def configure(self, route: Optional[Any] = None) -> None:
        if sd is None:
            raise RuntimeError("sounddevice is not installed")
        info = sd.query_devices(route, kind="input")
        max_channels = int(info["max_input_channels"])
        if max_channels < 1:
            raise RuntimeError(f"device {info['name']!r} has no input channels")
        self._device = route
        self._native_rate = float(info["default_samplerate"])
        self._channels = max(1, min(self._channels, max_channels))
        logger.info(
            "Input route: %s (%.0f Hz, %d ch)", info["name"], self._native_rate, self._channels
        )

    def install_callback(
        self,
        callback: Optional[HardwareCallback],
        on_finished: Optional[FinishedCallback] = None,
    ) -> None:
        self._callback = callback
        self._on_finished = on_finished

    def start(self) -> None:
        with self._lock:
            if self._stream is not None:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            self._stopping = False
            self._stream = sd.InputStream(
                device=self._device,
                samplerate=self._requested_rate or self._native_rate or None,
                channels=self._channels,
                dtype="float32",
                blocksize=self.blocksize,
                callback=self._on_audio,
                finished_callback=self._on_stream_finished,
            )
            self._stream.start()

    def stop(self) -> None:
        with self._lock:
            self._stopping = True
            stream = self._stream
            self._stream = None
            if stream is None:
                return
            stream.stop()
            stream.close()

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug("input status: %s", status)
        callback = self._callback
        if callback is None:
            return
        callback(indata)

    def _on_stream_finished(self) -> None:
        if self._stopping:
            return
        logger.warning("Input stream finished unexpectedly")
        on_finished = self._on_finished
        if on_finished is not None:
            on_finished()


def probe_microphone_access() -> PermissionState:
    """Report DENIED when no input device can be seen at all."""
    if sd is None:
        return PermissionState.DENIED
    try:
        devices = sd.query_devices()
    except Exception:
        logger.exception("device query failed")
        return PermissionState.DENIED
    if not any(d["max_input_channels"] > 0 for d in devices):
        return PermissionState.DENIED
    return PermissionState.UNDETERMINED


def prompt_microphone_access() -> bool:
    """Open and close a short input stream; the OS asks the user on first use."""
    if sd is None:
        return False
    try:
        with sd.InputStream(channels=1, dtype="float32"):
            sd.sleep(50)
    except Exception as exc:
        logger.warning("Microphone access refused: %s", exc)
        return False
    return True


def list_input_devices() -> list[tuple[int, str, bool]]:
    if sd is None:
        raise RuntimeError("sounddevice is not installed")
    default_input = sd.default.device[0]
    return [
        (i, d["name"], i == default_input)
        for i, d in enumerate(sd.query_devices())
        if d["max_input_channels"] > 0
    ]
