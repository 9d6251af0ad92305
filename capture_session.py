"""Audio capture lifecycle: configure, run, stop and interruptions."""

from __future__ import annotations

import logging
import threading
import weakref
from collections import deque
from functools import partial
from queue import Empty, Full, Queue
from typing import Any, Callable, Deque, List, Optional, Tuple

import numpy as np

from errors import (
    NOT_CONFIGURED,
    PERMISSION_DENIED,
    RATE_MISMATCH,
    RESUME_FAILED,
    ROUTE_UNAVAILABLE,
    SESSION_FAILED,
    STREAM_FAILED,
    CaptureFault,
    ConfigFault,
)
from interfaces import AudioBackend
from models import PermissionState, RawFrame, SessionState, now_ms
from observable import SnapshotCell
from permission import PermissionGate

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
FaultCallback = Callable[[CaptureFault], None]


class FrameHandoff:
    """Bounded, non-blocking queue between the hardware thread and the assembler."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: Queue[RawFrame | None] = Queue(maxsize=maxsize)
        self.dropped_frames = 0

    def offer(self, frame: RawFrame) -> bool:
        try:
            self._queue.put_nowait(frame)
        except Full:
            self.dropped_frames += 1
            logger.debug("frame handoff full, dropped %d frames", self.dropped_frames)
            return False
        return True

    def get(self, timeout: float = 0.2) -> RawFrame | None:
        """Return the next frame; ``None`` is the close sentinel. Raises Empty."""
        return self._queue.get(timeout=timeout)

    def close(self) -> None:
        try:
            self._queue.put_nowait(None)
        except Full:
            pass

    def drain(self) -> int:
        count = 0
        while True:
            try:
                self._queue.get_nowait()
            except Empty:
                return count
            count += 1

    def qsize(self) -> int:
        return self._queue.qsize()


class _FrameForwarder:
    """Hardware callback holding only a weak reference to its handoff.

    Once deactivated, or once the handoff is gone, every call is a no-op.
    """

    def __init__(self, handoff: FrameHandoff) -> None:
        self._handoff = weakref.ref(handoff)
        self.sample_rate = 0
        self.active = False

    def __call__(self, indata: Any) -> None:
        if not self.active:
            return
        handoff = self._handoff()
        if handoff is None:
            return
        # The hardware layer reuses ``indata`` after we return.
        samples = np.array(indata, dtype=np.float32, copy=True)
        if samples.ndim == 1:
            samples = samples.reshape(-1, 1)
        handoff.offer(
            RawFrame(
                samples=samples,
                sample_rate=self.sample_rate,
                channels=int(samples.shape[1]),
                timestamp_ms=now_ms(),
            )
        )


class InterruptionChannel:
    """Explicit registration point for platform interruption events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[Callable[[], None], Callable[[bool], None]]] = []

    def subscribe(
        self, on_begin: Callable[[], None], on_end: Callable[[bool], None]
    ) -> Callable[[], None]:
        entry = (on_begin, on_end)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def begin(self) -> None:
        logger.info("Audio interruption began")
        for on_begin, _ in self._snapshot():
            on_begin()

    def end(self, resume: bool) -> None:
        logger.info("Audio interruption ended (resume=%s)", resume)
        for _, on_end in self._snapshot():
            on_end(resume)

    def _snapshot(self) -> List[Tuple[Callable[[], None], Callable[[bool], None]]]:
        with self._lock:
            return list(self._subscribers)


class CaptureSession:
    """Owns the capture state machine.

    State changes and faults are queued while the session lock is held and
    delivered after it is released, one thread at a time and in order, so
    observers may call back into the session or into whatever owns it.
    """

    def __init__(
        self,
        backend: AudioBackend,
        permission: PermissionGate,
        handoff: FrameHandoff,
        interruptions: Optional[InterruptionChannel] = None,
        route: Optional[Any] = None,
        on_state_change: Optional[StateCallback] = None,
        on_fault: Optional[FaultCallback] = None,
    ) -> None:
        self._backend = backend
        self._permission = permission
        self._handoff = handoff
        self._interruptions = interruptions
        self._route = route
        self._on_state_change = on_state_change
        self._on_fault = on_fault

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._events: Deque[Callable[[], None]] = deque()
        self._dispatching = False
        self._forwarder: Optional[_FrameForwarder] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._failure_reason: Optional[str] = None
        self.cell: SnapshotCell[SessionState] = SnapshotCell(SessionState.IDLE)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure_reason(self) -> Optional[str]:
        return self._failure_reason

    def configure(self) -> None:
        try:
            with self._lock:
                self._configure_locked()
        finally:
            self._dispatch()

    def start(self) -> None:
        try:
            with self._lock:
                state = self._state
                if state == SessionState.RUNNING:
                    return
                if state not in (SessionState.CONFIGURED, SessionState.INTERRUPTED):
                    raise CaptureFault(NOT_CONFIGURED, f"cannot start from {state.value}")
                try:
                    self._activate()
                except CaptureFault as fault:
                    self._fail(fault.reason)
                    raise
                self._transition(SessionState.RUNNING)
        finally:
            self._dispatch()

    def stop(self) -> None:
        try:
            with self._lock:
                self._stop_locked()
        finally:
            self._dispatch()

    def close(self) -> None:
        try:
            with self._lock:
                self._stop_locked()
                if self._unsubscribe is not None:
                    self._unsubscribe()
                    self._unsubscribe = None
        finally:
            self._dispatch()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _configure_locked(self) -> None:
        state = self._state
        if state == SessionState.FAILED:
            raise ConfigFault(
                SESSION_FAILED, f"session failed ({self._failure_reason}); stop() first"
            )
        if state != SessionState.IDLE:
            return
        if self._permission.current_state() != PermissionState.GRANTED:
            fault = ConfigFault(PERMISSION_DENIED)
            self._fail(fault.reason)
            raise fault

        self._transition(SessionState.CONFIGURING)
        try:
            self._backend.configure(self._route)
        except Exception as exc:
            fault = ConfigFault(ROUTE_UNAVAILABLE, f"Failed to configure audio input: {exc}")
            self._fail(fault.reason)
            raise fault from exc

        if self._interruptions is not None and self._unsubscribe is None:
            self._unsubscribe = self._interruptions.subscribe(
                self._on_interruption_begin, self._on_interruption_end
            )
        self._transition(SessionState.CONFIGURED)

    def _stop_locked(self) -> None:
        if self._state == SessionState.IDLE:
            return
        self._teardown()
        self._failure_reason = None
        self._transition(SessionState.IDLE)

    def _activate(self) -> None:
        """Install the callback and open the stream; cleans up on failure."""
        forwarder = _FrameForwarder(self._handoff)
        try:
            native = float(self._backend.native_rate)
            processing = float(self._backend.processing_rate)
            if abs(native - processing) >= 0.5:
                raise CaptureFault(
                    RATE_MISMATCH,
                    f"Input ({native:.0f}Hz) and processing ({processing:.0f}Hz) "
                    "sample rates do not match. Resampling needed.",
                )
            forwarder.sample_rate = int(round(processing))
            self._backend.install_callback(forwarder, on_finished=self._on_stream_finished)
            self._forwarder = forwarder
            self._backend.start()
        except Exception as exc:
            self._teardown()
            if isinstance(exc, CaptureFault):
                raise
            raise CaptureFault(STREAM_FAILED, f"Failed to start audio stream: {exc}") from exc
        forwarder.active = True
        logger.info("Capture running at %d Hz", forwarder.sample_rate)

    def _teardown(self) -> None:
        forwarder = self._forwarder
        self._forwarder = None
        if forwarder is not None:
            forwarder.active = False
        try:
            self._backend.install_callback(None)
            self._backend.stop()
        except Exception:
            logger.warning("audio backend stop failed", exc_info=True)

    def _on_interruption_begin(self) -> None:
        try:
            with self._lock:
                if self._state != SessionState.RUNNING:
                    return
                self._teardown()
                self._transition(SessionState.INTERRUPTED)
        finally:
            self._dispatch()

    def _on_interruption_end(self, resume: bool) -> None:
        try:
            with self._lock:
                self._resume_locked(resume)
        finally:
            self._dispatch()

    def _resume_locked(self, resume: bool) -> None:
        if self._state != SessionState.INTERRUPTED:
            return
        if not resume:
            self._transition(SessionState.IDLE)
            return
        try:
            self._activate()
        except CaptureFault as fault:
            # Left idle on purpose: no automatic retry loop.
            logger.error("Failed to restart capture after interruption: %s", fault.reason)
            self._transition(SessionState.IDLE)
            self._emit_fault(CaptureFault(RESUME_FAILED, fault.reason))
            return
        self._transition(SessionState.RUNNING)

    def _on_stream_finished(self) -> None:
        # Arrives on the audio thread; handle off it so backend.stop() can join.
        threading.Thread(target=self._handle_stream_failure, daemon=True).start()

    def _handle_stream_failure(self) -> None:
        try:
            with self._lock:
                if self._state != SessionState.RUNNING:
                    return
                fault = CaptureFault(STREAM_FAILED)
                self._teardown()
                self._fail(fault.reason)
                self._emit_fault(fault)
        finally:
            self._dispatch()

    def _fail(self, reason: str) -> None:
        self._failure_reason = reason
        self._transition(SessionState.FAILED)

    def _emit_fault(self, fault: CaptureFault) -> None:
        if self._on_fault:
            self._events.append(partial(self._on_fault, fault))

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.info("Capture session %s -> %s", from_state.value, to_state.value)
        self._events.append(partial(self._publish_state, from_state, to_state))

    def _publish_state(self, from_state: SessionState, to_state: SessionState) -> None:
        self.cell.set(to_state)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)

    def _dispatch(self) -> None:
        """Deliver queued notifications with the session lock released.

        Only one thread drains at a time. A thread that finds a drain in
        progress (including a callback re-entering the session) leaves its
        events to that drain.
        """
        with self._lock:
            if self._dispatching:
                return
            self._dispatching = True
        try:
            while True:
                with self._lock:
                    if not self._events:
                        self._dispatching = False
                        return
                    event = self._events.popleft()
                event()
        except BaseException:
            with self._lock:
                self._dispatching = False
            raise
