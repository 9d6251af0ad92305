"""Shared error codes, user-facing messages and pipeline exceptions."""

from __future__ import annotations

from models import Fault, FaultKind

PERMISSION_DENIED = "PERMISSION_DENIED"
ROUTE_UNAVAILABLE = "ROUTE_UNAVAILABLE"
RATE_MISMATCH = "RATE_MISMATCH"
STREAM_FAILED = "STREAM_FAILED"
FORMAT_MISMATCH = "FORMAT_MISMATCH"
RESUME_FAILED = "RESUME_FAILED"
NOT_CONFIGURED = "NOT_CONFIGURED"
SESSION_FAILED = "SESSION_FAILED"
MODEL_LOAD_FAILED = "MODEL_LOAD_FAILED"
ENCODER_FAILED = "ENCODER_FAILED"
DECODER_FAILED = "DECODER_FAILED"
TOKENIZE_FAILED = "TOKENIZE_FAILED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone access was denied. Please enable it in system settings.",
    ROUTE_UNAVAILABLE: "No recording-capable audio input is available.",
    RATE_MISMATCH: "Input sample rate differs from the processing rate, resampling needed.",
    STREAM_FAILED: "The audio stream stopped unexpectedly.",
    FORMAT_MISMATCH: "Audio format cannot be normalized.",
    RESUME_FAILED: "Failed to resume recording after interruption.",
    NOT_CONFIGURED: "Audio capture has not been configured.",
    SESSION_FAILED: "Audio session failed and must be stopped before reconfiguring.",
    MODEL_LOAD_FAILED: "Failed to load transcription models.",
    ENCODER_FAILED: "Encoder failed on an audio window.",
    DECODER_FAILED: "Decoder failed on an audio window.",
    TOKENIZE_FAILED: "Tokens could not be converted to text.",
}


class PipelineError(Exception):
    """Base class for every fault raised by the pipeline."""

    kind: FaultKind = FaultKind.CAPTURE
    fatal: bool = True

    def __init__(self, code: str, reason: str = "") -> None:
        self.code = code
        self.reason = reason or ERROR_MESSAGES.get(code, code)
        super().__init__(f"{code}: {self.reason}")

    def to_fault(self) -> Fault:
        return Fault(kind=self.kind, code=self.code, reason=self.reason, fatal=self.fatal)


class ConfigFault(PipelineError):
    kind = FaultKind.CONFIG


class CaptureFault(PipelineError):
    kind = FaultKind.CAPTURE


class ModelLoadFault(PipelineError):
    kind = FaultKind.MODEL_LOAD

    def __init__(self, reason: str = "") -> None:
        super().__init__(MODEL_LOAD_FAILED, reason)


class InferenceFault(PipelineError):
    kind = FaultKind.INFERENCE
    fatal = False


class TokenizeFault(PipelineError):
    kind = FaultKind.TOKENIZE
    fatal = False

    def __init__(self, reason: str = "") -> None:
        super().__init__(TOKENIZE_FAILED, reason)
