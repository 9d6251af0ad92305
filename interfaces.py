"""Protocol interfaces for the external collaborators of the pipeline."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from models import PermissionState

# Called from the hardware thread with a (frames, channels) float32 buffer
# that is only valid until the callback returns.
HardwareCallback = Callable[[np.ndarray], None]
FinishedCallback = Callable[[], None]

PermissionPrompt = Callable[[], bool]
PermissionProbe = Callable[[], PermissionState]


class AudioBackend(Protocol):
    @property
    def native_rate(self) -> float: ...

    @property
    def processing_rate(self) -> float: ...

    @property
    def channels(self) -> int: ...

    def configure(self, route: Optional[Any] = None) -> None: ...

    def install_callback(
        self,
        callback: Optional[HardwareCallback],
        on_finished: Optional[FinishedCallback] = None,
    ) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class Encoder(Protocol):
    def __call__(self, window: np.ndarray) -> np.ndarray: ...


class Decoder(Protocol):
    def __call__(self, tokens: Sequence[int], features: np.ndarray) -> np.ndarray: ...


class ModelProvider(Protocol):
    def load_encoder(self) -> Encoder: ...

    def load_decoder(self) -> Decoder: ...


class Tokenizer(Protocol):
    def decode(self, tokens: Sequence[int]) -> str: ...


@runtime_checkable
class SpecialTokenSource(Protocol):
    """Optional ModelProvider extension: (start, end, max_tokens) of the checkpoint."""

    def special_tokens(self) -> Tuple[int, int, int]: ...
