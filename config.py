"""Simple JSON-based config store and pipeline settings."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

from inference import DEFAULT_END_TOKEN, DEFAULT_MAX_TOKENS, DEFAULT_START_TOKEN
from window_assembler import DEFAULT_TARGET_RATE, DEFAULT_WINDOW_SECONDS

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openai/whisper-base.en"


@dataclass
class PipelineConfig:
    target_rate: int = DEFAULT_TARGET_RATE
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    window_queue_depth: int = 2
    frame_queue_depth: int = 256
    blocksize: int = 1024
    start_token: int = DEFAULT_START_TOKEN
    end_token: int = DEFAULT_END_TOKEN
    max_tokens: int = DEFAULT_MAX_TOKENS
    finish_timeout_s: float = 60.0
    stop_timeout_s: float = 2.0

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        defaults = cls()
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            default = getattr(defaults, key)
            try:
                kwargs[key] = type(default)(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid config value %s=%r", key, value)
        return cls(**kwargs)


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "glint_stt" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", "Key.alt_r"))

    def set_hotkey(self, hotkey: str) -> None:
        data = self._read_all()
        data["hotkey"] = hotkey
        self._write_all(data)

    def get_model(self) -> str:
        data = self._read_all()
        return str(data.get("model", DEFAULT_MODEL))

    def set_model(self, model: str) -> None:
        data = self._read_all()
        data["model"] = model
        self._write_all(data)

    def get_device(self) -> Optional[int]:
        value = self._read_all().get("device")
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    def set_device(self, device: Optional[int]) -> None:
        data = self._read_all()
        data["device"] = device
        self._write_all(data)

    def load_pipeline_config(self) -> PipelineConfig:
        section = self._read_all().get("pipeline", {})
        if not isinstance(section, dict):
            return PipelineConfig()
        return PipelineConfig.from_dict(section)

    def save_pipeline_config(self, config: PipelineConfig) -> None:
        data = self._read_all()
        data["pipeline"] = asdict(config)
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
