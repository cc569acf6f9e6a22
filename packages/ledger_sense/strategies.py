"""Deterministic classification strategies run before the model fallback.

Every strategy has the same contract, ``suggest(txn, ctx) -> Suggestion |
None``, and must not raise: failures are logged and reported as no match.
The coordinator decides which strategies run and in what order.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from .dictionary import CategoryDictionary
from .ledger_detector import LedgerDetector
from .logging_setup import get_logger
from .models import EXPENSE, Book, Suggestion, Transaction
from .profiles import ProfileBuilder
from .repositories import HistoryRepository
from .rules.engine import RuleEngine

ATTRIBUTION_CONFIDENCE: float = 0.8
ATTRIBUTION_MIN_SCORE: float = 0.5
CATEGORY_RATIO_CONFIDENCE: float = 0.7
PROFILE_MIN_CONFIDENCE: float = 0.5

SOURCE_RULE = "rule"
SOURCE_DICTIONARY = "dictionary"
SOURCE_ATTRIBUTION = "attribution"
SOURCE_CATEGORY_RATIO = "category_ratio"
SOURCE_PROFILE = "profile"

_logger = get_logger("ledger_sense.strategies")


@dataclass(slots=True)
class StrategyContext:
    """Per-request collaborators and caches shared by the strategies."""

    user_id: int
    books: Sequence[Book]
    history: HistoryRepository
    builder: ProfileBuilder
    rule_engine: RuleEngine
    detector: LedgerDetector
    dictionary: CategoryDictionary | None = None
    candidate_book_ids: Sequence[str] | None = None
    _expense_counts: dict[str, Counter[str]] = field(default_factory=dict)

    def book_name(self, book_id: str) -> str:
        for book in self.books:
            if book.book_id == book_id:
                return book.name
        return book_id

    def expense_categories(self, book_id: str) -> Counter[str]:
        """Category counts over the ledger's expense history (memoized per request)."""

        counts = self._expense_counts.get(book_id)
        if counts is None:
            counts = Counter(
                t.industry_type
                for t in self.history.transactions(self.user_id, book_id=book_id)
                if t.flow_type == EXPENSE and t.industry_type
            )
            self._expense_counts[book_id] = counts
        return counts


class Strategy(Protocol):
    name: str

    def suggest(self, txn: Transaction, ctx: StrategyContext) -> Suggestion | None: ...


def _normalize(text: str) -> str:
    return "".join(text.split()).lower()


class RuleStrategy:
    """Stored rules first, then the curated keyword dictionary (category only)."""

    name = "rules"

    def suggest(self, txn: Transaction, ctx: StrategyContext) -> Suggestion | None:
        found = ctx.rule_engine.match(txn, ctx.user_id, candidate_book_ids=ctx.candidate_book_ids)
        if found is not None:
            rule = found.rule
            return Suggestion(
                book_id=rule.target_book_id,
                book_name=ctx.book_name(rule.target_book_id),
                flow_type=rule.target_flow_type,
                industry_type=rule.target_category,
                confidence=found.confidence,
                comment=f"规则匹配({rule.name or f'规则#{rule.id}'})",
                rule_id=rule.id,
                source=SOURCE_RULE,
            )
        if ctx.dictionary is None:
            return None
        hit = ctx.dictionary.match(txn)
        if hit is None:
            return None
        return Suggestion(
            industry_type=hit.category,
            confidence=hit.confidence,
            comment=f"关键字匹配({hit.pattern})",
            source=SOURCE_DICTIONARY,
        )


class AttributionStrategy:
    """Match the free-text attribution column against ledger ids and names."""

    name = "attribution"

    def suggest(self, txn: Transaction, ctx: StrategyContext) -> Suggestion | None:
        attribution = (txn.attribution or "").strip()
        if not attribution or not ctx.books:
            return None
        needle = _normalize(attribution)
        best: Book | None = None
        for book in ctx.books:
            if needle in (_normalize(book.book_id), _normalize(book.name)):
                best = book
                break
        if best is None:
            best_score = 0.0
            for book in ctx.books:
                name = _normalize(book.name)
                if not name:
                    continue
                score = 0.0
                if name in needle:
                    score = len(name) / len(needle)
                elif needle in name:
                    score = len(needle) / len(name)
                if score >= ATTRIBUTION_MIN_SCORE and score > best_score:
                    best, best_score = book, score
        if best is None:
            return None
        return Suggestion(
            book_id=best.book_id,
            book_name=best.name,
            confidence=ATTRIBUTION_CONFIDENCE,
            comment=f"归属信息匹配({attribution})",
            source=SOURCE_ATTRIBUTION,
        )


class CategoryRatioStrategy:
    """Pick the ledger in which the flow's category takes the largest expense share."""

    name = "category"

    def suggest(self, txn: Transaction, ctx: StrategyContext) -> Suggestion | None:
        category = (txn.industry_type or "").strip()
        if not category:
            return None
        best: tuple[float, Book] | None = None
        for book in ctx.books:
            profile = ctx.builder.get_or_build(ctx.user_id, book.book_id)
            weights = profile.category_weights
            if not weights or weights.get(category, 0) == 0:
                continue
            expenses = ctx.expense_categories(book.book_id)
            expense_total = sum(expenses.values())
            if expense_total == 0:
                ratio = weights[category] / sum(weights.values())
            elif expenses[category] == 0:
                continue
            else:
                ratio = expenses[category] / expense_total
            if best is None or ratio > best[0]:
                best = (ratio, book)
        if best is None:
            return None
        ratio, book = best
        return Suggestion(
            book_id=book.book_id,
            book_name=book.name,
            confidence=CATEGORY_RATIO_CONFIDENCE,
            comment=f"分类占比兜底匹配({category}, 占比: {ratio * 100:.1f}%)",
            source=SOURCE_CATEGORY_RATIO,
        )


class ProfileStrategy:
    """Best profile-scored ledger, accepted from confidence 0.5."""

    name = "profiles"

    def suggest(self, txn: Transaction, ctx: StrategyContext) -> Suggestion | None:
        matches = ctx.detector.detect(txn, ctx.user_id, ctx.books, max_results=1)
        if not matches:
            return None
        best = matches[0]
        existing = txn.suggested_book_id
        if existing:
            if best.book_id != existing:
                _logger.warning(
                    "strategies:profile_conflict suggested=%s existing=%s",
                    best.book_id,
                    existing,
                )
            return None
        if best.confidence < PROFILE_MIN_CONFIDENCE:
            return None
        return Suggestion(
            book_id=best.book_id,
            book_name=best.book_name,
            confidence=best.confidence,
            comment=f"账本画像匹配(分数: {best.score:.2f})",
            source=SOURCE_PROFILE,
        )


def run_strategy(strategy: Strategy, txn: Transaction, ctx: StrategyContext) -> Suggestion | None:
    try:
        return strategy.suggest(txn, ctx)
    except Exception as e:  # noqa: BLE001
        _logger.warning("strategies:failed strategy=%s error=%s", strategy.name, e)
        return None
