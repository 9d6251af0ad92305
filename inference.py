"""Encoder/decoder inference: one encode plus greedy autoregressive decoding."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, List, Optional

import numpy as np

from errors import DECODER_FAILED, ENCODER_FAILED, InferenceFault
from interfaces import Decoder, Encoder
from models import AudioWindow, TokenSequence

logger = logging.getLogger(__name__)

# Whisper base.en special tokens.
DEFAULT_START_TOKEN = 50257
DEFAULT_END_TOKEN = 50256
DEFAULT_MAX_TOKENS = 448


def argmax(logits: np.ndarray) -> int:
    """Index of the largest logit; ties go to the lowest index.

    For a matrix of logits the last row (the newest position) is used.
    """
    values = np.asarray(logits)
    if values.ndim == 0 or values.size == 0:
        raise InferenceFault(DECODER_FAILED, "decoder returned empty logits")
    if values.ndim > 1:
        values = values.reshape(-1, values.shape[-1])[-1]
    if np.isnan(values).any():
        raise InferenceFault(DECODER_FAILED, "decoder returned NaN logits")
    return int(np.argmax(values))


class InferenceLoop:
    def __init__(
        self,
        encoder: Encoder,
        decoder: Decoder,
        start_token: int = DEFAULT_START_TOKEN,
        end_token: int = DEFAULT_END_TOKEN,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        if max_tokens < 0:
            raise ValueError("max_tokens must be >= 0")
        self._encoder = encoder
        self._decoder = decoder
        self.start_token = start_token
        self.end_token = end_token
        self.max_tokens = max_tokens

    def run(self, window: AudioWindow) -> TokenSequence:
        started = time.monotonic()
        try:
            features = self._encoder(window.samples)
        except InferenceFault:
            raise
        except Exception as exc:
            raise InferenceFault(ENCODER_FAILED, f"Encoder prediction failed: {exc}") from exc

        tokens: List[int] = [self.start_token]
        truncated = True
        for step in range(self.max_tokens):
            try:
                logits = self._decoder(tuple(tokens), features)
            except Exception as exc:
                raise InferenceFault(
                    DECODER_FAILED, f"Decoder prediction failed at step {step}: {exc}"
                ) from exc
            next_token = argmax(logits)
            tokens.append(next_token)
            if next_token == self.end_token:
                truncated = False
                break

        if truncated:
            logger.warning(
                "Window %d hit the %d token cap without an end token", window.index, self.max_tokens
            )
        logger.info(
            "Window %d decoded: %d tokens in %.2fs",
            window.index,
            len(tokens),
            time.monotonic() - started,
        )
        return TokenSequence(tokens=tuple(tokens), truncated=truncated)


class WindowQueue:
    """Small FIFO of windows waiting for inference; overflow drops the oldest."""

    def __init__(self, maxsize: int = 2) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.maxsize = maxsize
        self._items: Deque[AudioWindow] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped_windows = 0

    def put(self, window: AudioWindow) -> Optional[AudioWindow]:
        """Enqueue without blocking; returns the window dropped to make room."""
        with self._cond:
            if self._closed:
                return None
            dropped = None
            if len(self._items) >= self.maxsize:
                dropped = self._items.popleft()
                self.dropped_windows += 1
                logger.warning(
                    "Inference busy, dropped window %d (%d dropped so far)",
                    dropped.index,
                    self.dropped_windows,
                )
            self._items.append(window)
            self._cond.notify()
            return dropped

    def get(self, timeout: float = 0.2) -> Optional[AudioWindow]:
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout)
            if not self._items:
                return None
            return self._items.popleft()

    def clear(self) -> int:
        with self._cond:
            count = len(self._items)
            self._items.clear()
            return count

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
