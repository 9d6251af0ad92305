"""Wires capture, windowing, inference and publishing into one pipeline."""

from __future__ import annotations

import logging
import threading
from queue import Empty
from typing import Any, Dict, List, Optional

from capture_session import CaptureSession, FrameHandoff, InterruptionChannel
from config import PipelineConfig
from errors import CaptureFault, ConfigFault, InferenceFault, ModelLoadFault
from inference import InferenceLoop, WindowQueue
from interfaces import AudioBackend, ModelProvider, SpecialTokenSource, Tokenizer
from models import PermissionState, SessionState, Transcript
from observable import FaultBus, SnapshotCell
from permission import PermissionGate
from recovery import RecoveryController
from transcript import TranscriptAccumulator
from window_assembler import WindowAssembler

logger = logging.getLogger(__name__)


class TranscriptionPipeline:
    """Microphone to transcript, one window at a time.

    Threads: the hardware callback only copies frames into ``FrameHandoff``;
    an assembler thread turns frames into windows; a single inference thread
    consumes the ``WindowQueue``, so at most one window is ever being
    decoded. Observers read ``permission``, ``session_state``, ``transcript``
    and subscribe to ``faults``.
    """

    def __init__(
        self,
        backend: AudioBackend,
        model_provider: ModelProvider,
        tokenizer: Tokenizer,
        permission: PermissionGate,
        config: Optional[PipelineConfig] = None,
        interruptions: Optional[InterruptionChannel] = None,
        route: Optional[Any] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self._provider = model_provider
        self._permission = permission
        self.interruptions = interruptions or InterruptionChannel()

        self.faults = FaultBus()
        self.recovery = RecoveryController(self.faults, self.stop)
        self._handoff = FrameHandoff(maxsize=self.config.frame_queue_depth)
        self._windows = WindowQueue(maxsize=self.config.window_queue_depth)
        self._assembler = WindowAssembler(self.config.target_rate, self.config.window_seconds)
        self._accumulator = TranscriptAccumulator(
            tokenizer,
            start_token=self.config.start_token,
            end_token=self.config.end_token,
            on_fault=self.recovery.handle_tokenize_fault,
        )
        self.session = CaptureSession(
            backend,
            permission,
            self._handoff,
            interruptions=self.interruptions,
            route=route,
            on_state_change=self.recovery.on_session_state,
            on_fault=self.recovery.handle_capture_fault,
        )

        self._lock = threading.RLock()
        # Held for a whole window decode; outlives a worker abandoned by stop().
        self._decode_lock = threading.Lock()
        self._loop: Optional[InferenceLoop] = None
        self._running = False
        self._finishing = False
        self._generation = 0
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._windows_processed = 0
        self._windows_paused = 0

    # ------------------------------------------------------------------
    # Observer surface
    # ------------------------------------------------------------------

    @property
    def permission(self) -> SnapshotCell[PermissionState]:
        return self._permission.cell

    @property
    def session_state(self) -> SnapshotCell[SessionState]:
        return self.session.cell

    @property
    def transcript(self) -> SnapshotCell[Transcript]:
        return self._accumulator.cell

    @property
    def running(self) -> bool:
        return self._running

    def stats(self) -> Dict[str, Any]:
        return {
            "dropped_frames": self._handoff.dropped_frames,
            "dropped_windows": self._windows.dropped_windows,
            "paused_windows": self._windows_paused,
            "windows_processed": self._windows_processed,
            "faults": {kind.value: n for kind, n in self.recovery.fault_counts.items()},
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            loop = self._ensure_models()

            if self._permission.current_state() == PermissionState.UNDETERMINED:
                self._permission.request_authorization()
            self.session.stop()
            try:
                self.session.configure()
            except ConfigFault as fault:
                self.recovery.handle_fault(fault)
                raise

            self._generation += 1
            generation = self._generation
            self._reset_buffers()
            self._stop_event = threading.Event()
            self._finishing = False
            self._threads = [
                threading.Thread(
                    target=self._assemble_worker,
                    args=(self._stop_event,),
                    name="window-assembler",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._inference_worker,
                    args=(loop, generation, self._stop_event),
                    name="inference",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()
            self._running = True

            try:
                self.session.start()
            except CaptureFault as fault:
                self.stop()
                self.recovery.handle_fault(fault)
                raise
            logger.info("Pipeline started (generation %d)", generation)

    def stop(self) -> None:
        """Stop capture and abandon any in-flight window; idempotent."""
        with self._lock:
            if not self._running:
                self.session.stop()
                return
            self._running = False
            self._generation += 1
            self.session.stop()
            self._stop_event.set()
            self._handoff.close()
            self._windows.clear()
            self._windows.close()
            threads = self._threads
            self._threads = []
        self._join(threads, timeout=self.config.stop_timeout_s)
        logger.info("Pipeline stopped")

    def finish(self, timeout: Optional[float] = None) -> None:
        """Stop capture, decode the buffered partial window, then stop."""
        with self._lock:
            if not self._running:
                return
            self._finishing = True
            self.session.stop()
            self._handoff.close()
            threads = list(self._threads)
        self._join(threads, timeout=self.config.finish_timeout_s if timeout is None else timeout)
        self.stop()

    def interrupt_begin(self) -> None:
        self.interruptions.begin()

    def interrupt_end(self, resume: bool) -> None:
        self.interruptions.end(resume)

    def close(self) -> None:
        self.stop()
        self.session.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _ensure_models(self) -> InferenceLoop:
        if self._loop is not None:
            return self._loop
        try:
            encoder = self._provider.load_encoder()
            decoder = self._provider.load_decoder()
        except ModelLoadFault as fault:
            self.recovery.handle_fault(fault)
            raise
        except Exception as exc:
            fault = ModelLoadFault(str(exc))
            self.recovery.handle_fault(fault)
            raise fault from exc

        start, end, max_tokens = (
            self.config.start_token,
            self.config.end_token,
            self.config.max_tokens,
        )
        if isinstance(self._provider, SpecialTokenSource):
            start, end, model_max = self._provider.special_tokens()
            max_tokens = min(max_tokens, model_max)
        self._accumulator.start_token = start
        self._accumulator.end_token = end
        self._loop = InferenceLoop(encoder, decoder, start, end, max_tokens)
        return self._loop

    def _reset_buffers(self) -> None:
        self._handoff.drain()
        self._assembler.reset()
        self._windows.clear()
        self._windows.reopen()
        self.recovery.reset()
        self._accumulator.reset()

    def _assemble_worker(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                frame = self._handoff.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:
                if self._finishing and not stop_event.is_set():
                    window = self._assembler.flush()
                    if window is not None:
                        self._windows.put(window)
                self._windows.close()
                return
            try:
                windows = self._assembler.ingest(frame)
            except CaptureFault as fault:
                self.recovery.handle_capture_fault(fault)
                return
            for window in windows:
                if not self.recovery.accepting_windows:
                    self._windows_paused += 1
                    logger.info("Intake paused, window %d not queued", window.index)
                    continue
                self._windows.put(window)

    def _inference_worker(
        self, loop: InferenceLoop, generation: int, stop_event: threading.Event
    ) -> None:
        while not stop_event.is_set():
            window = self._windows.get(timeout=0.2)
            if window is None:
                if self._windows.closed:
                    return
                continue
            try:
                with self._decode_lock:
                    if not self._is_current(generation):
                        return
                    tokens = loop.run(window)
            except InferenceFault as fault:
                if self._is_current(generation):
                    self.recovery.handle_inference_fault(fault)
                continue
            with self._lock:
                if not self._is_current(generation):
                    logger.info("Discarding result of window %d after stop", window.index)
                    return
                self._accumulator.apply(tokens, window_index=window.index)
                self._windows_processed += 1

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _join(self, threads: List[threading.Thread], timeout: float) -> None:
        current = threading.current_thread()
        for thread in threads:
            if thread is current or not thread.is_alive():
                continue
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Worker %s did not exit within %.1fs", thread.name, timeout)
