"""Turns decoded token sequences into the published transcript."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from errors import TokenizeFault
from interfaces import Tokenizer
from models import TokenSequence, Transcript
from observable import SnapshotCell

logger = logging.getLogger(__name__)

ERROR_MARKER = "[untranscribable]"


class TranscriptAccumulator:
    """Each window's text replaces the published transcript.

    Windows are not stitched together; only the latest window is shown.
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        start_token: int,
        end_token: int,
        on_fault: Optional[Callable[[TokenizeFault], None]] = None,
    ) -> None:
        self._tokenizer = tokenizer
        self.start_token = start_token
        self.end_token = end_token
        self._on_fault = on_fault
        self.cell: SnapshotCell[Transcript] = SnapshotCell(Transcript())

    @property
    def transcript(self) -> Transcript:
        return self.cell.get()

    def apply(self, tokens: TokenSequence, window_index: int = -1) -> Transcript:
        content = self.strip_special(tokens.tokens)
        try:
            text = self._tokenizer.decode(content)
        except Exception as exc:
            fault = TokenizeFault(f"tokenizer failed on {len(content)} tokens: {exc}")
            logger.warning("Tokenize failed for window %d: %s", window_index, exc)
            text = ERROR_MARKER
            if self._on_fault:
                self._on_fault(fault)
        transcript = Transcript(text=text, window_index=window_index)
        self.cell.set(transcript)
        logger.debug("Transcript updated from window %d: %r", window_index, text)
        return transcript

    def reset(self) -> None:
        self.cell.set(Transcript())

    def strip_special(self, tokens: tuple[int, ...]) -> List[int]:
        content = list(tokens)
        if content and content[0] == self.start_token:
            content = content[1:]
        if content and content[-1] == self.end_token:
            content = content[:-1]
        return content
