"""Environment-backed settings.

Values are read when the loader is called, never at import time, so tests can
``monkeypatch.setenv`` freely and the CLI can load a ``.env`` first.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .logging_setup import get_logger

_DEFAULT_MODEL = "gpt-4o-mini"
_DEFAULT_BATCH_SIZE = 3
_DEFAULT_TIMEOUT_MS = 300_000

DICTIONARY_PATH_ENV = "LEDGER_SENSE_DICTIONARY_PATH"

_logger = get_logger("ledger_sense.settings")


@dataclass(frozen=True, slots=True)
class LlmSettings:
    """Connection settings for the chat-completions fallback."""

    base_url: str | None
    api_key: str | None
    model: str = _DEFAULT_MODEL
    batch_size: int = _DEFAULT_BATCH_SIZE
    timeout_ms: int = _DEFAULT_TIMEOUT_MS

    @property
    def configured(self) -> bool:
        return bool(self.base_url) and bool(self.model)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


def _positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        _logger.warning("settings:invalid_int name=%s value=%r default=%d", name, raw, default)
        return default
    if value <= 0:
        _logger.warning("settings:non_positive name=%s value=%d default=%d", name, value, default)
        return default
    return value


def load_llm_settings() -> LlmSettings:
    """Build :class:`LlmSettings` from ``LLM_*`` environment variables."""

    base_url = (os.getenv("LLM_BASE_URL") or "").strip() or None
    api_key = (os.getenv("LLM_API_KEY") or "").strip() or None
    model = (os.getenv("LLM_MODEL") or "").strip() or _DEFAULT_MODEL
    return LlmSettings(
        base_url=base_url,
        api_key=api_key,
        model=model,
        batch_size=_positive_int_env("LLM_BATCH_SIZE", _DEFAULT_BATCH_SIZE),
        timeout_ms=_positive_int_env("LLM_TIMEOUT_MS", _DEFAULT_TIMEOUT_MS),
    )


def dictionary_path() -> Path | None:
    raw = os.getenv(DICTIONARY_PATH_ENV)
    if not raw or not raw.strip():
        return None
    return Path(raw.strip())
