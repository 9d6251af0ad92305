"""Whisper checkpoints from Hugging Face as ModelProvider and Tokenizer.

The encoder turns a 16 kHz window into log-mel features and then encoder
hidden states; the decoder re-runs the full token prefix against those
states and returns the logits of the next position.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from errors import ModelLoadFault

try:
    import torch
    from transformers import WhisperForConditionalGeneration, WhisperProcessor
except Exception:  # pragma: no cover
    torch = None  # type: ignore
    WhisperForConditionalGeneration = None  # type: ignore
    WhisperProcessor = None  # type: ignore

logger = logging.getLogger(__name__)


class WhisperModelProvider:
    def __init__(self, model_name: str, device: str = "cpu", sample_rate: int = 16000) -> None:
        self.model_name = model_name
        self.device = device
        self.sample_rate = sample_rate
        self._model: Any = None
        self._processor: Any = None
        self._lock = threading.Lock()

    def load_encoder(self) -> "WhisperEncoder":
        model, processor = self._load()
        return WhisperEncoder(model, processor.feature_extractor, self.device, self.sample_rate)

    def load_decoder(self) -> "WhisperDecoder":
        model, _ = self._load()
        return WhisperDecoder(model, self.device)

    def load_tokenizer(self) -> "WhisperTokenizer":
        _, processor = self._load()
        return WhisperTokenizer(processor.tokenizer)

    def special_tokens(self) -> Tuple[int, int, int]:
        model, _ = self._load()
        cfg = model.config
        return (
            int(cfg.decoder_start_token_id),
            int(cfg.eos_token_id),
            int(cfg.max_target_positions),
        )

    def _load(self) -> Tuple[Any, Any]:
        with self._lock:
            if self._model is not None:
                return self._model, self._processor
            if WhisperForConditionalGeneration is None or WhisperProcessor is None:
                raise ModelLoadFault("transformers/torch are not installed")
            logger.info("Loading %s on %s...", self.model_name, self.device)
            try:
                processor = WhisperProcessor.from_pretrained(self.model_name)
                model = WhisperForConditionalGeneration.from_pretrained(self.model_name)
                model = model.to(self.device)
                model.eval()
            except Exception as exc:
                raise ModelLoadFault(f"Failed to load {self.model_name}: {exc}") from exc
            self._model, self._processor = model, processor
            logger.info("Model %s loaded", self.model_name)
            return model, processor


class WhisperEncoder:
    def __init__(self, model: Any, feature_extractor: Any, device: str, sample_rate: int) -> None:
        self._model = model
        self._feature_extractor = feature_extractor
        self._device = device
        self._sample_rate = sample_rate

    def __call__(self, window: np.ndarray) -> np.ndarray:
        inputs = self._feature_extractor(
            window, sampling_rate=self._sample_rate, return_tensors="pt"
        )
        features = inputs.input_features.to(self._device)
        with torch.no_grad():
            hidden = self._model.get_encoder()(features).last_hidden_state
        return hidden.float().cpu().numpy()


class WhisperDecoder:
    def __init__(self, model: Any, device: str) -> None:
        self._model = model
        self._device = device

    def __call__(self, tokens: Sequence[int], features: np.ndarray) -> np.ndarray:
        ids = torch.tensor([list(tokens)], dtype=torch.long, device=self._device)
        encoder_states = torch.from_numpy(features).to(self._device)
        with torch.no_grad():
            out = self._model(encoder_outputs=(encoder_states,), decoder_input_ids=ids)
        return out.logits[0, -1].float().cpu().numpy()


class WhisperTokenizer:
    """Decodes token ids; ids outside the vocabulary are skipped."""

    def __init__(self, tokenizer: Any, vocab_size: Optional[int] = None) -> None:
        self._tokenizer = tokenizer
        self._vocab_size = vocab_size if vocab_size is not None else len(tokenizer)

    def decode(self, tokens: Sequence[int]) -> str:
        known = [int(t) for t in tokens if 0 <= int(t) < self._vocab_size]
        if not known:
            return ""
        return str(self._tokenizer.decode(known, skip_special_tokens=True))
