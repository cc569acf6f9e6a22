"""Per-ledger statistical profiles.

A profile tallies category, keyword, pay-type and amount-bucket frequencies
over a ledger's committed transactions. ``rebuild`` recomputes it from the
full history; ``update_incremental`` folds new transactions into the stored
counts. Both fold into untruncated tallies and cut the exposed maps to the
top N only at the end, so any split of a history into incremental updates
yields exactly the rebuilt profile.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from .keywords import extract_from_fields, merge_counts, top_n
from .logging_setup import get_logger
from .models import LedgerProfile, Transaction, amount_bucket
from .repositories import HistoryRepository, ProfileRepository

KEYWORD_LIMIT: int = 30
_SUMMARY_MIN: int = 10
_SUMMARY_MAX: int = 20
EXPORT_VERSION: int = 1

_logger = get_logger("ledger_sense.profiles")


def transaction_keywords(txn: Transaction, account_names: Sequence[str] = ()) -> list[str]:
    return extract_from_fields(
        (txn.name, txn.description, txn.goods, txn.attribution), account_names
    )


class _Tally:
    __slots__ = ("categories", "keywords", "pay_types", "amounts", "total")

    def __init__(self) -> None:
        self.categories: Counter[str] = Counter()
        self.keywords: Counter[str] = Counter()
        self.pay_types: Counter[str] = Counter()
        self.amounts: Counter[str] = Counter()
        self.total = 0

    def add(self, txn: Transaction, account_names: Sequence[str]) -> None:
        if txn.industry_type:
            self.categories[txn.industry_type] += 1
        if txn.pay_type:
            self.pay_types[txn.pay_type] += 1
        self.amounts[amount_bucket(txn.money)] += 1
        self.keywords.update(transaction_keywords(txn, account_names))
        self.total += 1


def _tally(transactions: Iterable[Transaction], account_names: Sequence[str]) -> _Tally:
    tally = _Tally()
    for txn in transactions:
        tally.add(txn, account_names)
    return tally


def _apply(
    book_id: str, base: LedgerProfile | None, tally: _Tally, limit: int
) -> LedgerProfile:
    base = base or LedgerProfile(book_id=book_id)
    categories = merge_counts(base.category_counts or base.category_weights, tally.categories)
    words = merge_counts(base.keyword_counts or base.keywords, tally.keywords)
    pay_types = merge_counts(base.pay_type_counts or base.pay_type_stats, tally.pay_types)
    return LedgerProfile(
        book_id=book_id,
        category_weights=top_n(categories, limit),
        keywords=top_n(words, limit),
        pay_type_stats=top_n(pay_types, limit),
        amount_distribution=merge_counts(base.amount_distribution, tally.amounts),
        total_flows=base.total_flows + tally.total,
        updated_at=datetime.now(UTC),
        category_counts=categories,
        keyword_counts=words,
        pay_type_counts=pay_types,
    )


def summarize(profile: LedgerProfile | None) -> str:
    """Human-readable one-liner of the profile's most frequent keywords."""

    if profile is None or profile.total_flows == 0:
        return "暂无流水数据，已初始化账本画像"
    ranked = list(top_n(profile.keywords, len(profile.keywords)).items())
    if not ranked:
        return f"总流水: {profile.total_flows} | 暂无可用词频画像"
    n = len(ranked)
    limit = min(_SUMMARY_MAX, max(_SUMMARY_MIN, n))
    words = "、".join(f"{word}({count})" for word, count in ranked[:limit])
    suffix = ""
    if n > limit:
        suffix = "，更多词已省略"
    elif n < _SUMMARY_MIN:
        suffix = "，词频样本较少"
    return (
        f"总流水: {profile.total_flows} | 高频词画像: {words}{suffix}"
        f"（最高频 {ranked[0][1]} 次）"
    )


class ProfileBuilder:
    """Builds and stores ledger profiles from committed history."""

    def __init__(
        self,
        history: HistoryRepository,
        profiles: ProfileRepository,
        *,
        keyword_limit: int = KEYWORD_LIMIT,
    ) -> None:
        self._history = history
        self._profiles = profiles
        self._limit = keyword_limit

    def rebuild(self, user_id: int, book_id: str) -> LedgerProfile:
        rows = self._history.transactions(user_id, book_id=book_id)
        accounts = self._history.account_names(user_id)
        profile = _apply(book_id, None, _tally(rows, accounts), self._limit)
        self._profiles.save(profile)
        _logger.info(
            "profiles:rebuilt book_id=%s total=%d keywords=%d",
            book_id,
            profile.total_flows,
            len(profile.keywords),
        )
        return profile

    def update_incremental(
        self, user_id: int, book_id: str, transactions: Iterable[Transaction]
    ) -> LedgerProfile:
        """Fold newly committed ``transactions`` into the stored profile.

        Without a stored profile this is a full rebuild.
        """

        existing = self._profiles.get(book_id)
        if existing is None:
            return self.rebuild(user_id, book_id)
        accounts = self._history.account_names(user_id)
        tally = _tally(transactions, accounts)
        profile = _apply(book_id, existing, tally, self._limit)
        self._profiles.save(profile)
        _logger.info(
            "profiles:incremental book_id=%s added=%d total=%d",
            book_id,
            tally.total,
            profile.total_flows,
        )
        return profile

    def get_or_build(self, user_id: int, book_id: str) -> LedgerProfile:
        return self._profiles.get(book_id) or self.rebuild(user_id, book_id)

    def summary(self, book_id: str) -> str:
        return summarize(self._profiles.get(book_id))

    def export_keywords(self, book_id: str) -> dict[str, Any]:
        profile = self._profiles.get(book_id) or LedgerProfile(book_id=book_id)
        return {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(UTC).isoformat(),
            "book_id": book_id,
            "keywords": dict(top_n(profile.keywords, len(profile.keywords))),
            "total_flows": profile.total_flows,
            "summary": summarize(profile),
        }

    def import_keywords(
        self,
        book_id: str,
        keywords: Mapping[str, Any],
        *,
        override: bool = True,
        top_n_limit: int | None = None,
    ) -> LedgerProfile:
        """Replace (or merge into) a profile's keyword counts.

        Blank keys and non-positive or non-numeric counts are dropped; if
        nothing usable remains a ``ValueError`` is raised.
        """

        cleaned: dict[str, int] = {}
        for raw_key, raw_count in keywords.items():
            key = str(raw_key).strip()
            try:
                count = int(raw_count)
            except (TypeError, ValueError):
                continue
            if key and count > 0:
                cleaned[key] = cleaned.get(key, 0) + count
        if not cleaned:
            raise ValueError("缺少有效的关键词数据")

        limit = top_n_limit or self._limit
        existing = self._profiles.get(book_id) or LedgerProfile(book_id=book_id)
        merged = cleaned if override else merge_counts(existing.keyword_counts or existing.keywords, cleaned)
        profile = LedgerProfile(
            book_id=book_id,
            category_weights=dict(existing.category_weights),
            keywords=top_n(merged, limit),
            pay_type_stats=dict(existing.pay_type_stats),
            amount_distribution=dict(existing.amount_distribution),
            total_flows=max(existing.total_flows, sum(cleaned.values()), 1),
            updated_at=datetime.now(UTC),
            category_counts=dict(existing.category_counts),
            keyword_counts=dict(merged),
            pay_type_counts=dict(existing.pay_type_counts),
        )
        self._profiles.save(profile)
        _logger.info(
            "profiles:imported book_id=%s keywords=%d override=%s",
            book_id,
            len(profile.keywords),
            override,
        )
        return profile
