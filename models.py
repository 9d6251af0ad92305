"""Core data models for the transcription pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np


class PermissionState(str, Enum):
    UNDETERMINED = "UNDETERMINED"
    GRANTED = "GRANTED"
    DENIED = "DENIED"


class SessionState(str, Enum):
    IDLE = "IDLE"
    CONFIGURING = "CONFIGURING"
    CONFIGURED = "CONFIGURED"
    RUNNING = "RUNNING"
    INTERRUPTED = "INTERRUPTED"
    FAILED = "FAILED"


class FaultKind(str, Enum):
    CONFIG = "config"
    CAPTURE = "capture"
    MODEL_LOAD = "model_load"
    INFERENCE = "inference"
    TOKENIZE = "tokenize"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RawFrame:
    """Audio copied out of one hardware callback.

    ``samples`` is a float32 array shaped ``(frames, channels)``.
    """

    samples: np.ndarray
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[0]) if self.samples.ndim else 0


@dataclass
class AudioWindow:
    samples: np.ndarray
    sample_rate: int = 16000
    index: int = 0

    def __len__(self) -> int:
        return int(self.samples.shape[0])


@dataclass(frozen=True)
class TokenSequence:
    tokens: tuple[int, ...]
    truncated: bool = False

    def __len__(self) -> int:
        return len(self.tokens)


@dataclass(frozen=True)
class Transcript:
    text: str = ""
    window_index: int = -1
    updated_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class Fault:
    kind: FaultKind
    code: str
    reason: str
    fatal: bool = False

    def describe(self) -> str:
        return f"{self.code}: {self.reason}"
