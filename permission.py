"""Microphone authorization gate."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from interfaces import PermissionProbe, PermissionPrompt
from models import PermissionState
from observable import SnapshotCell

logger = logging.getLogger(__name__)


class PermissionGate:
    """Tracks microphone authorization; prompts the user at most once.

    The state only moves from UNDETERMINED to GRANTED or DENIED and never
    goes back.
    """

    def __init__(
        self,
        prompt: PermissionPrompt,
        probe: Optional[PermissionProbe] = None,
    ) -> None:
        self._prompt = prompt
        self._probe = probe
        self._lock = threading.Lock()
        self._prompted = False
        self._resolve_lock = threading.Lock()
        self.cell: SnapshotCell[PermissionState] = SnapshotCell(PermissionState.UNDETERMINED)

    @property
    def state(self) -> PermissionState:
        return self.cell.get()

    def current_state(self) -> PermissionState:
        state = self.cell.get()
        if state != PermissionState.UNDETERMINED or self._probe is None:
            return state
        try:
            probed = self._probe()
        except Exception:
            logger.exception("permission probe failed")
            return state
        if probed != PermissionState.UNDETERMINED:
            self._resolve(probed)
        return self.cell.get()

    def request_authorization(self) -> PermissionState:
        # The lock is held across the prompt so concurrent callers wait for
        # the single answer instead of prompting again.
        with self._lock:
            state = self.cell.get()
            if state != PermissionState.UNDETERMINED or self._prompted:
                return state
            self._prompted = True
            logger.info("Requesting microphone permission...")
            try:
                granted = bool(self._prompt())
            except Exception:
                logger.exception("permission prompt failed")
                granted = False
            self._resolve(PermissionState.GRANTED if granted else PermissionState.DENIED)
            return self.cell.get()

    def request_authorization_async(
        self, callback: Callable[[PermissionState], None]
    ) -> threading.Thread:
        def _run() -> None:
            callback(self.request_authorization())

        thread = threading.Thread(target=_run, name="permission-prompt", daemon=True)
        thread.start()
        return thread

    def _resolve(self, state: PermissionState) -> None:
        with self._resolve_lock:
            if self.cell.get() != PermissionState.UNDETERMINED:
                return
            logger.info("Microphone permission %s", state.value)
            self.cell.set(state)
