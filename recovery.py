"""Fault and interruption policy for the running pipeline."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Callable

from errors import CaptureFault, InferenceFault, PipelineError, TokenizeFault
from models import FaultKind, SessionState
from observable import FaultBus

logger = logging.getLogger(__name__)


class RecoveryController:
    """Decides what each fault or interruption does to the pipeline.

    - capture faults stop everything and wait for an explicit restart
    - inference and tokenize faults drop one window and keep running
    - an interruption pauses window intake until capture is back
    """

    def __init__(self, faults: FaultBus, stop_pipeline: Callable[[], None]) -> None:
        self._faults = faults
        self._stop_pipeline = stop_pipeline
        self._accepting = threading.Event()
        self._accepting.set()
        self._lock = threading.Lock()
        self.fault_counts: Counter[FaultKind] = Counter()

    @property
    def accepting_windows(self) -> bool:
        return self._accepting.is_set()

    def pause(self) -> None:
        if self._accepting.is_set():
            logger.info("Window intake paused")
        self._accepting.clear()

    def resume(self) -> None:
        if not self._accepting.is_set():
            logger.info("Window intake resumed")
        self._accepting.set()

    def handle_fault(self, error: PipelineError) -> None:
        if isinstance(error, CaptureFault):
            self.handle_capture_fault(error)
        elif isinstance(error, InferenceFault):
            self.handle_inference_fault(error)
        elif isinstance(error, TokenizeFault):
            self.handle_tokenize_fault(error)
        else:
            self._surface(error)

    def handle_capture_fault(self, error: CaptureFault) -> None:
        logger.error("Capture fault, stopping pipeline: %s", error)
        self._stop_pipeline()
        self._surface(error)

    def handle_inference_fault(self, error: InferenceFault) -> None:
        logger.warning("Inference fault, window dropped: %s", error)
        self._surface(error)

    def handle_tokenize_fault(self, error: TokenizeFault) -> None:
        logger.warning("Tokenize fault: %s", error)
        self._surface(error)

    def on_session_state(self, from_state: SessionState, to_state: SessionState) -> None:
        if to_state == SessionState.INTERRUPTED:
            self.pause()
        elif from_state == SessionState.INTERRUPTED and to_state == SessionState.RUNNING:
            self.resume()
        elif from_state == SessionState.INTERRUPTED and to_state == SessionState.IDLE:
            logger.info("Interruption ended without resuming, stopping pipeline")
            self._stop_pipeline()

    def reset(self) -> None:
        with self._lock:
            self.fault_counts.clear()
        self._accepting.set()

    def _surface(self, error: PipelineError) -> None:
        fault = error.to_fault()
        with self._lock:
            self.fault_counts[fault.kind] += 1
        self._faults.publish(fault)
