from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional, Sequence

import numpy as np
import pytest

from config import PipelineConfig
from errors import PERMISSION_DENIED, CaptureFault, ConfigFault, ModelLoadFault
from models import FaultKind, SessionState
from permission import PermissionGate
from pipeline import TranscriptionPipeline

START = 1
END = 2
VOCAB = 64
RATE = 16000


class FakeBackend:
    def __init__(self) -> None:
        self.callback: Any = None
        self.on_finished: Any = None
        self.fail_start = False

    native_rate = float(RATE)
    processing_rate = float(RATE)
    channels = 1

    def configure(self, route: Any = None) -> None:
        pass

    def install_callback(self, callback: Any, on_finished: Any = None) -> None:
        self.callback = callback
        self.on_finished = on_finished

    def start(self) -> None:
        if self.fail_start:
            raise OSError("device busy")

    def stop(self) -> None:
        pass

    def push(self, n: int) -> None:
        self.push_samples(np.zeros(n, dtype=np.float32))

    def push_samples(self, samples: np.ndarray) -> None:
        if self.callback is not None:
            self.callback(samples.reshape(-1, 1))


def _logits(token: int) -> np.ndarray:
    logits = np.zeros(VOCAB, dtype=np.float32)
    logits[token] = 1.0
    return logits


class ScriptedDecoder:
    """Emits ``script`` one token per step, then END."""

    def __init__(self, script: Sequence[int] = (42,)) -> None:
        self.script = list(script) + [END]
        self.calls = 0

    def __call__(self, tokens: Sequence[int], features: np.ndarray) -> np.ndarray:
        self.calls += 1
        return _logits(self.script[len(tokens) - 1])


class StubProvider:
    def __init__(self, decoder: Callable[..., np.ndarray], fail: bool = False) -> None:
        self.decoder = decoder
        self.fail = fail
        self.encoder_calls = 0

    def _encode(self, window: np.ndarray) -> np.ndarray:
        self.encoder_calls += 1
        return np.zeros((1, 4), dtype=np.float32)

    def load_encoder(self) -> Callable[[np.ndarray], np.ndarray]:
        if self.fail:
            raise RuntimeError("no weights on disk")
        return self._encode

    def load_decoder(self) -> Callable[..., np.ndarray]:
        return self.decoder


class FakeTokenizer:
    def decode(self, tokens: Sequence[int]) -> str:
        return "".join(f" w{t}" for t in tokens)


EXPECTED = FakeTokenizer().decode([42])


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _pipeline(
    decoder: Optional[Callable[..., np.ndarray]] = None,
    window_seconds: float = 0.1,
    granted: bool = True,
    provider: Optional[StubProvider] = None,
    stop_timeout_s: float = 2.0,
) -> tuple[TranscriptionPipeline, FakeBackend]:
    backend = FakeBackend()
    config = PipelineConfig(
        window_seconds=window_seconds,
        start_token=START,
        end_token=END,
        max_tokens=16,
        stop_timeout_s=stop_timeout_s,
    )
    pipeline = TranscriptionPipeline(
        backend,
        provider or StubProvider(decoder or ScriptedDecoder()),
        FakeTokenizer(),
        PermissionGate(lambda: granted),
        config=config,
    )
    return pipeline, backend


@pytest.fixture
def cleanup():  # noqa: ANN201
    pipelines: list[TranscriptionPipeline] = []
    yield pipelines.append
    for pipeline in pipelines:
        pipeline.close()


# ---------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------

def test_thirty_seconds_of_audio_yields_one_transcript(cleanup) -> None:  # noqa: ANN001
    pipeline, backend = _pipeline(window_seconds=30.0)
    cleanup(pipeline)
    pipeline.start()
    assert pipeline.session_state.get() == SessionState.RUNNING

    t = np.arange(RATE * 30, dtype=np.float64) / RATE
    tone = (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
    for block in np.split(tone, 30):
        backend.push_samples(block)

    assert wait_until(lambda: pipeline.transcript.get().text != "")
    assert pipeline.transcript.get().text == FakeTokenizer().decode([42])
    assert pipeline.transcript.get().window_index == 0
    assert pipeline.stats()["windows_processed"] == 1


def test_transcript_observers_are_notified(cleanup) -> None:  # noqa: ANN001
    pipeline, backend = _pipeline()
    cleanup(pipeline)
    seen: list[str] = []
    pipeline.transcript.subscribe(lambda t: seen.append(t.text))
    pipeline.start()

    backend.push(1600)
    assert wait_until(lambda: EXPECTED in seen)


def test_at_most_one_window_in_inference(cleanup) -> None:  # noqa: ANN001
    lock = threading.Lock()
    state = {"active": 0, "max": 0}

    def slow_decoder(tokens: Sequence[int], features: np.ndarray) -> np.ndarray:
        with lock:
            state["active"] += 1
            state["max"] = max(state["max"], state["active"])
        time.sleep(0.01)
        with lock:
            state["active"] -= 1
        return _logits(END)

    pipeline, backend = _pipeline(decoder=slow_decoder, window_seconds=0.01)
    cleanup(pipeline)
    pipeline.start()
    for _ in range(40):
        backend.push(160)

    assert wait_until(lambda: pipeline.stats()["windows_processed"] >= 2)
    assert state["max"] == 1


def test_finish_decodes_partial_window(cleanup) -> None:  # noqa: ANN001
    pipeline, backend = _pipeline(window_seconds=1.0)
    cleanup(pipeline)
    pipeline.start()
    backend.push(4000)

    assert wait_until(lambda: pipeline._handoff.qsize() == 0)
    pipeline.finish(timeout=5.0)

    assert pipeline.transcript.get().text == EXPECTED
    assert not pipeline.running
    assert pipeline.session_state.get() == SessionState.IDLE


# ---------------------------------------------------------------
# Stop
# ---------------------------------------------------------------

def test_stop_discards_in_flight_result(cleanup) -> None:  # noqa: ANN001
    entered = threading.Event()
    release = threading.Event()

    def blocking_decoder(tokens: Sequence[int], features: np.ndarray) -> np.ndarray:
        entered.set()
        release.wait(5.0)
        return _logits(42 if len(tokens) == 1 else END)

    pipeline, backend = _pipeline(decoder=blocking_decoder)
    cleanup(pipeline)
    pipeline.start()
    backend.push(1600)
    assert entered.wait(5.0)

    timer = threading.Timer(0.2, release.set)
    timer.start()
    pipeline.stop()
    timer.join()

    assert not pipeline.running
    time.sleep(0.1)
    assert pipeline.transcript.get().text == ""
    assert pipeline.stats()["windows_processed"] == 0


def test_restart_waits_for_decode_abandoned_by_stop(cleanup) -> None:  # noqa: ANN001
    lock = threading.Lock()
    state = {"active": 0, "max": 0, "calls": 0}
    first_entered = threading.Event()
    release = threading.Event()

    def decoder(tokens: Sequence[int], features: np.ndarray) -> np.ndarray:
        with lock:
            state["active"] += 1
            state["max"] = max(state["max"], state["active"])
            state["calls"] += 1
            first = state["calls"] == 1
        if first:
            first_entered.set()
            release.wait(5.0)
        with lock:
            state["active"] -= 1
        return _logits(42 if len(tokens) == 1 else END)

    pipeline, backend = _pipeline(decoder=decoder, stop_timeout_s=0.1)
    cleanup(pipeline)
    pipeline.start()
    backend.push(1600)
    assert first_entered.wait(5.0)

    pipeline.stop()  # returns while the first decode is still blocked
    pipeline.start()
    backend.push(1600)
    time.sleep(0.3)
    assert pipeline.stats()["windows_processed"] == 0

    release.set()
    assert wait_until(lambda: pipeline.transcript.get().text == EXPECTED)
    assert state["max"] == 1


def test_stop_is_idempotent(cleanup) -> None:  # noqa: ANN001
    pipeline, _ = _pipeline()
    cleanup(pipeline)
    pipeline.stop()
    pipeline.start()
    pipeline.stop()
    pipeline.stop()
    assert pipeline.session_state.get() == SessionState.IDLE


def test_restart_after_stop(cleanup) -> None:  # noqa: ANN001
    pipeline, backend = _pipeline()
    cleanup(pipeline)
    pipeline.start()
    pipeline.stop()
    pipeline.start()

    backend.push(1600)
    assert wait_until(lambda: pipeline.transcript.get().text == EXPECTED)


# ---------------------------------------------------------------
# Faults
# ---------------------------------------------------------------

def test_inference_fault_drops_window_and_keeps_running(cleanup) -> None:  # noqa: ANN001
    calls = {"n": 0}

    def flaky_decoder(tokens: Sequence[int], features: np.ndarray) -> np.ndarray:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("accelerator reset")
        return _logits(42 if len(tokens) == 1 else END)

    pipeline, backend = _pipeline(decoder=flaky_decoder)
    cleanup(pipeline)
    pipeline.start()

    backend.push(1600)
    assert wait_until(lambda: pipeline.stats()["faults"].get("inference") == 1)
    assert pipeline.running

    backend.push(1600)
    assert wait_until(lambda: pipeline.transcript.get().text == EXPECTED)
    assert pipeline.transcript.get().window_index == 1


def test_stream_failure_stops_pipeline(cleanup) -> None:  # noqa: ANN001
    pipeline, backend = _pipeline()
    cleanup(pipeline)
    faults: list[Any] = []
    pipeline.faults.subscribe(faults.append)
    pipeline.start()

    backend.on_finished()

    assert wait_until(lambda: not pipeline.running)
    assert wait_until(lambda: any(f.kind == FaultKind.CAPTURE for f in faults))
    assert pipeline.session_state.get() == SessionState.IDLE


def test_capture_start_failure_is_surfaced(cleanup) -> None:  # noqa: ANN001
    pipeline, backend = _pipeline()
    cleanup(pipeline)
    backend.fail_start = True

    with pytest.raises(CaptureFault):
        pipeline.start()
    assert not pipeline.running
    assert [f.kind for f in pipeline.faults.history()] == [FaultKind.CAPTURE]


def test_model_load_failure(cleanup) -> None:  # noqa: ANN001
    provider = StubProvider(ScriptedDecoder(), fail=True)
    pipeline, _ = _pipeline(provider=provider)
    cleanup(pipeline)

    with pytest.raises(ModelLoadFault, match="no weights"):
        pipeline.start()
    assert not pipeline.running
    assert pipeline.session_state.get() == SessionState.IDLE
    assert pipeline.faults.history()[-1].kind == FaultKind.MODEL_LOAD


def test_permission_denied(cleanup) -> None:  # noqa: ANN001
    pipeline, _ = _pipeline(granted=False)
    cleanup(pipeline)

    with pytest.raises(ConfigFault) as info:
        pipeline.start()
    assert info.value.code == PERMISSION_DENIED
    assert pipeline.session_state.get() == SessionState.FAILED
    assert not pipeline.running
    assert pipeline.faults.history()[-1].kind == FaultKind.CONFIG


# ---------------------------------------------------------------
# Interruptions
# ---------------------------------------------------------------

def test_interruption_keeps_transcript_and_resumes(cleanup) -> None:  # noqa: ANN001
    pipeline, backend = _pipeline()
    cleanup(pipeline)
    pipeline.start()
    backend.push(1600)
    assert wait_until(lambda: pipeline.transcript.get().text == EXPECTED)

    pipeline.interrupt_begin()
    assert pipeline.session_state.get() == SessionState.INTERRUPTED
    assert not pipeline.recovery.accepting_windows
    assert pipeline.transcript.get().text == EXPECTED
    backend.push(1600)  # no callback installed while interrupted

    pipeline.interrupt_end(resume=True)
    assert pipeline.session_state.get() == SessionState.RUNNING
    assert pipeline.recovery.accepting_windows
    assert pipeline.running


def test_interruption_without_resume_stops_pipeline(cleanup) -> None:  # noqa: ANN001
    pipeline, _ = _pipeline()
    cleanup(pipeline)
    pipeline.start()

    pipeline.interrupt_begin()
    pipeline.interrupt_end(resume=False)

    assert pipeline.session_state.get() == SessionState.IDLE
    assert not pipeline.running


def test_interruption_end_racing_stop_does_not_hang(cleanup) -> None:  # noqa: ANN001
    pipeline, _ = _pipeline()
    cleanup(pipeline)
    pipeline.start()
    pipeline.interrupt_begin()

    at_idle = threading.Event()
    release = threading.Event()

    def hold_at_idle(state: SessionState) -> None:
        if state == SessionState.IDLE and not at_idle.is_set():
            at_idle.set()
            release.wait(2.0)

    pipeline.session_state.subscribe(hold_at_idle)
    ender = threading.Thread(target=pipeline.interrupt_end, args=(False,), daemon=True)
    ender.start()
    assert at_idle.wait(2.0)

    stopper = threading.Thread(target=pipeline.stop, daemon=True)
    stopper.start()
    stopper.join(2.0)
    assert not stopper.is_alive()

    release.set()
    ender.join(2.0)
    assert not ender.is_alive()
    assert not pipeline.running
    assert pipeline.session_state.get() == SessionState.IDLE
