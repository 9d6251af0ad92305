"""Normalizes raw frames to mono target-rate audio and cuts fixed windows."""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from errors import FORMAT_MISMATCH, CaptureFault
from models import AudioWindow, RawFrame

logger = logging.getLogger(__name__)

DEFAULT_TARGET_RATE = 16000
DEFAULT_WINDOW_SECONDS = 30.0


def downmix(samples: np.ndarray) -> np.ndarray:
    """Average all channels of a (frames, channels) array into mono."""
    if samples.ndim == 1:
        return samples.astype(np.float32, copy=False)
    if samples.shape[1] == 1:
        return samples[:, 0].astype(np.float32, copy=False)
    return samples.mean(axis=1, dtype=np.float64).astype(np.float32)


def fit_to_length(samples: np.ndarray, length: int) -> np.ndarray:
    """Zero-pad or truncate a mono signal to exactly ``length`` samples."""
    out = np.zeros(length, dtype=np.float32)
    n = min(length, int(samples.shape[0]))
    out[:n] = samples[:n]
    return out


class LinearResampler:
    """Streaming linear-interpolation resampler.

    The read position is carried between chunks, so feeding a signal in
    pieces yields the same samples as feeding it in one call.
    """

    def __init__(self, src_rate: int, dst_rate: int) -> None:
        if src_rate <= 0 or dst_rate <= 0:
            raise ValueError("sample rates must be positive")
        self.src_rate = src_rate
        self.dst_rate = dst_rate
        self._step = float(src_rate) / float(dst_rate)
        # Next output position in input coordinates; -1 is the last sample
        # of the previous chunk.
        self._pos = 0.0
        self._prev: Optional[np.float32] = None

    def process(self, samples: np.ndarray) -> np.ndarray:
        if self.src_rate == self.dst_rate:
            return samples.astype(np.float32, copy=False)
        if samples.size == 0:
            return np.zeros(0, dtype=np.float32)

        if self._prev is None:
            ext = samples.astype(np.float64)
            start = self._pos
        else:
            ext = np.concatenate(([self._prev], samples)).astype(np.float64)
            start = self._pos + 1.0

        last = ext.shape[0] - 1
        if start > last:
            count = 0
        else:
            count = int(np.floor((last - start) / self._step)) + 1
        positions = start + self._step * np.arange(count, dtype=np.float64)
        out = np.interp(positions, np.arange(ext.shape[0], dtype=np.float64), ext)

        self._pos = start + count * self._step - ext.shape[0]
        self._prev = np.float32(ext[-1])
        return out.astype(np.float32)


class WindowAssembler:
    def __init__(
        self,
        target_rate: int = DEFAULT_TARGET_RATE,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        if target_rate <= 0 or window_seconds <= 0:
            raise ValueError("target_rate and window_seconds must be positive")
        self.target_rate = target_rate
        self.window_length = int(round(target_rate * window_seconds))
        self._buffer = np.zeros(self.window_length, dtype=np.float32)
        self._filled = 0
        self._next_index = 0
        self._resampler: Optional[LinearResampler] = None

    @property
    def pending_samples(self) -> int:
        return self._filled

    def ingest(self, frame: RawFrame) -> List[AudioWindow]:
        """Append one frame; return every window it completed (often none)."""
        mono = self._normalize(frame)
        windows: List[AudioWindow] = []
        offset = 0
        total = int(mono.shape[0])
        while offset < total:
            take = min(self.window_length - self._filled, total - offset)
            self._buffer[self._filled : self._filled + take] = mono[offset : offset + take]
            self._filled += take
            offset += take
            if self._filled == self.window_length:
                windows.append(self._emit(self._buffer.copy()))
                self._filled = 0
        return windows

    def flush(self) -> Optional[AudioWindow]:
        """Emit whatever is buffered as one zero-padded window."""
        if self._filled == 0:
            return None
        window = self._emit(fit_to_length(self._buffer[: self._filled], self.window_length))
        self._filled = 0
        return window

    def reset(self) -> None:
        self._filled = 0
        self._resampler = None

    def _emit(self, samples: np.ndarray) -> AudioWindow:
        window = AudioWindow(samples=samples, sample_rate=self.target_rate, index=self._next_index)
        self._next_index += 1
        logger.debug("window %d assembled", window.index)
        return window

    def _normalize(self, frame: RawFrame) -> np.ndarray:
        samples = np.asarray(frame.samples)
        if frame.sample_rate <= 0:
            raise CaptureFault(FORMAT_MISMATCH, f"invalid sample rate {frame.sample_rate}")
        if frame.channels < 1:
            raise CaptureFault(FORMAT_MISMATCH, f"invalid channel count {frame.channels}")
        if samples.ndim == 1:
            if frame.channels != 1:
                raise CaptureFault(
                    FORMAT_MISMATCH,
                    f"flat buffer declared with {frame.channels} channels",
                )
        elif samples.ndim != 2 or samples.shape[1] != frame.channels:
            raise CaptureFault(
                FORMAT_MISMATCH,
                f"buffer shape {samples.shape} does not match {frame.channels} channels",
            )

        mono = downmix(samples)
        if frame.sample_rate == self.target_rate:
            return mono
        resampler = self._resampler
        if resampler is None or resampler.src_rate != frame.sample_rate:
            if resampler is not None:
                logger.info(
                    "Input rate changed %d -> %d Hz", resampler.src_rate, frame.sample_rate
                )
            resampler = LinearResampler(frame.sample_rate, self.target_rate)
            self._resampler = resampler
        return resampler.process(mono)
