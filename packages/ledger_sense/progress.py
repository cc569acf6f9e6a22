"""Token-addressed progress reporting for long-running classification requests.

The pipeline writes snapshots under a caller-supplied token and clears them
when it finishes; callers poll with :meth:`ProgressStore.get`. Entries expire
after ten minutes and expired entries are dropped lazily on access.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .models import LlmBatchInfo

_TTL_SECONDS: float = 600.0

STATUS_SKIPPED = "skipped"
STATUS_PENDING = "pending"
STATUS_PARTIAL = "partial"
STATUS_COMPLETED = "completed"

STAGE_LABELS: tuple[tuple[str, str], ...] = (
    ("rules", "规则引擎"),
    ("attribution", "归属匹配"),
    ("category", "分类匹配"),
    ("profiles", "账本画像"),
    ("llm", "LLM 匹配"),
)


def stage_status(scope: int, matched: int) -> str:
    if scope <= 0:
        return STATUS_SKIPPED
    if matched <= 0:
        return STATUS_PENDING
    if matched >= scope:
        return STATUS_COMPLETED
    return STATUS_PARTIAL


@dataclass(frozen=True, slots=True)
class StageProgress:
    key: str
    label: str
    scope: int
    matched: int
    status: str


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    total: int
    matched: int
    stages: tuple[StageProgress, ...] = ()
    llm_batch: LlmBatchInfo | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_snapshot(
    total: int,
    *,
    rules: int = 0,
    attribution: int = 0,
    category: int = 0,
    profiles: int = 0,
    llm_scope: int = 0,
    llm_matched: int = 0,
    llm_batch: LlmBatchInfo | None = None,
) -> ProgressSnapshot:
    """Build a snapshot whose history-stage scopes cascade.

    Each history stage's scope is the previous scope minus what the previous
    stage matched, starting from ``total``; the model stage's scope is passed
    explicitly since it only covers flows still lacking a ledger.
    """

    labels = dict(STAGE_LABELS)
    scope = max(total, 0)
    stages: list[StageProgress] = []
    for key, matched in (
        ("rules", rules),
        ("attribution", attribution),
        ("category", category),
        ("profiles", profiles),
    ):
        stages.append(StageProgress(key, labels[key], scope, matched, stage_status(scope, matched)))
        scope = max(scope - matched, 0)
    stages.append(
        StageProgress("llm", labels["llm"], llm_scope, llm_matched, stage_status(llm_scope, llm_matched))
    )
    matched_total = min(max(total, 0), rules + attribution + category + profiles + llm_matched)
    return ProgressSnapshot(total=total, matched=matched_total, stages=tuple(stages), llm_batch=llm_batch)


class ProgressStore:
    """In-process progress store keyed by opaque tokens."""

    def __init__(self, ttl_seconds: float = _TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, ProgressSnapshot]] = {}
        self._lock = threading.Lock()

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (ts, _) in self._entries.items() if now - ts > self._ttl]
        for k in expired:
            del self._entries[k]

    def set(self, token: str, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            self._entries[token] = (now, snapshot)

    def get(self, token: str) -> ProgressSnapshot | None:
        with self._lock:
            self._evict_expired(self._clock())
            entry = self._entries.get(token)
            return entry[1] if entry else None

    def clear(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired(self._clock())
            return len(self._entries)
