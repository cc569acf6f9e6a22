"""Curated keyword → category dictionary.

The dictionary file is JSON shaped as::

    {"餐饮": {"patterns": ["星巴克", "面"], "trade_type_signals": ["美团"]}}

A bare list of patterns is accepted in place of the object. Longer patterns
are tried first; single-character patterns only match when not adjacent to
other CJK characters and carry a lower confidence.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import Any

from .logging_setup import get_logger
from .models import DictionaryMatch, Transaction

_SINGLE_CHAR_CONFIDENCE: float = 0.6
_MIN_CONFIDENCE: float = 0.7
_MAX_CONFIDENCE: float = 0.95
_LONG_PATTERN_LEN: int = 4
_LONG_PATTERN_BONUS: float = 0.1
_SIGNAL_BONUS: float = 0.15
_SIGNAL_CAP: float = 0.98

_logger = get_logger("ledger_sense.dictionary")


@dataclass(frozen=True, slots=True)
class _Entry:
    patterns: tuple[str, ...]
    signals: tuple[str, ...]


def _parse(data: Any) -> dict[str, _Entry]:
    if not isinstance(data, Mapping):
        raise ValueError("category dictionary must be a JSON object")
    out: dict[str, _Entry] = {}
    for category, body in data.items():
        if isinstance(body, Mapping):
            raw_patterns = body.get("patterns") or []
            raw_signals = body.get("trade_type_signals") or []
        else:
            raw_patterns, raw_signals = body or [], []
        patterns = sorted(
            {str(p).strip().lower() for p in raw_patterns if str(p).strip()},
            key=lambda p: (-len(p), p),
        )
        signals = tuple(str(s).strip().lower() for s in raw_signals if str(s).strip())
        if patterns:
            out[str(category)] = _Entry(tuple(patterns), signals)
    return out


def _single_char_hit(pattern: str, text: str) -> bool:
    return re.search(rf"(^|[^一-龥]){re.escape(pattern)}([^一-龥]|$)", text) is not None


def _confidence(pattern: str, text: str) -> float:
    if len(pattern) == 1:
        return _SINGLE_CHAR_CONFIDENCE
    conf = max(_MIN_CONFIDENCE, len(pattern) / max(len(text), len(pattern)))
    if len(pattern) >= _LONG_PATTERN_LEN:
        conf += _LONG_PATTERN_BONUS
    return min(_MAX_CONFIDENCE, conf)


class CategoryDictionary:
    """Loaded dictionary with ``match`` over name, memo and goods text."""

    def __init__(self, entries: Mapping[str, Any] | None = None, *, path: Path | None = None):
        self._path = path
        self._entries = _parse(entries or {})

    @classmethod
    def from_path(cls, path: str | PathLike[str] | None) -> CategoryDictionary:
        """Load from ``path``; a missing or unreadable file gives an empty dictionary."""

        if path is None:
            return cls()
        inst = cls(path=Path(path))
        inst.reload()
        return inst

    def reload(self) -> None:
        if self._path is None:
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._entries = _parse(data)
        except (OSError, ValueError) as e:
            _logger.warning("dictionary:load_failed path=%s error=%s", self._path, e)
            self._entries = {}
            return
        _logger.info(
            "dictionary:loaded path=%s categories=%d", self._path, len(self._entries)
        )

    def categories(self) -> list[str]:
        return list(self._entries)

    def patterns(self, category: str) -> list[str]:
        entry = self._entries.get(category)
        return list(entry.patterns) if entry else []

    def __len__(self) -> int:
        return len(self._entries)

    def _match_entry(
        self, category: str, entry: _Entry, fields: tuple[tuple[str, str], ...], pay_type: str
    ) -> DictionaryMatch | None:
        for pattern in entry.patterns:
            for field_name, text in fields:
                if not text or pattern not in text:
                    continue
                if len(pattern) == 1 and not _single_char_hit(pattern, text):
                    continue
                conf = _confidence(pattern, text)
                if pay_type and any(s in pay_type for s in entry.signals):
                    conf = min(_SIGNAL_CAP, conf + _SIGNAL_BONUS)
                return DictionaryMatch(category, pattern, round(conf, 4), field_name)
        return None

    def match(self, txn: Transaction) -> DictionaryMatch | None:
        """Return the highest-confidence category hit for ``txn``, or ``None``."""

        try:
            fields = (
                ("name", (txn.name or "").lower()),
                ("description", (txn.description or "").lower()),
                ("goods", (txn.goods or "").lower()),
            )
            pay_type = (txn.pay_type or "").lower()
            best: DictionaryMatch | None = None
            for category, entry in self._entries.items():
                hit = self._match_entry(category, entry, fields, pay_type)
                if hit is not None and (best is None or hit.confidence > best.confidence):
                    best = hit
            return best
        except Exception as e:  # noqa: BLE001
            _logger.warning("dictionary:match_failed error=%s", e)
            return None
