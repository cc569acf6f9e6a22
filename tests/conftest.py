"""Pytest configuration for test isolation.

Model settings and the category dictionary path are read from the
environment at call time. A developer shell (or a ``.env`` loaded by the CLI)
may carry ``LLM_BASE_URL`` and friends, which would route tests to a real
endpoint and make "unconfigured model" assertions flaky. An autouse fixture
strips those variables for every test; tests opt back in with
``monkeypatch.setenv``.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

_ISOLATED_ENV: tuple[str, ...] = (
    "LLM_BASE_URL",
    "LLM_API_KEY",
    "LLM_MODEL",
    "LLM_BATCH_SIZE",
    "LLM_TIMEOUT_MS",
    "LEDGER_SENSE_DICTIONARY_PATH",
    "LEDGER_SENSE_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
