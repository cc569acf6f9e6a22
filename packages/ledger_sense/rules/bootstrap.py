"""Seeding an initial rule set from history for users without rules."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from ..logging_setup import get_logger
from ..models import BootstrapResult, Correction, Transaction
from ..repositories import HistoryRepository, RuleRepository
from .learner import RuleLearner

MIN_FLOW_COUNT: int = 40
MAX_CANDIDATES: int = 100
_MIN_SUPPORT: int = 4
_DEFAULT_PER_BOOK: int = 50
# (minimum total flows, per-book cap), checked top-down.
_PER_BOOK_TIERS: tuple[tuple[int, int], ...] = ((10_000, 100), (5_000, 75), (1_000, 50))

SKIP_RULES_EXIST = "rules-exist"
SKIP_INSUFFICIENT = "insufficient-flows"
SKIP_NO_CANDIDATES = "no-candidates"

_logger = get_logger("ledger_sense.rules.bootstrap")


def per_book_cap(total_flows: int) -> int:
    for threshold, cap in _PER_BOOK_TIERS:
        if total_flows >= threshold:
            return cap
    return _DEFAULT_PER_BOOK


@dataclass(slots=True)
class _Group:
    book_id: str
    name: str
    category: str
    rows: list[Transaction] = field(default_factory=list)


class RuleBootstrapper:
    def __init__(
        self,
        rules: RuleRepository,
        history: HistoryRepository,
        learner: RuleLearner | None = None,
    ) -> None:
        self._rules = rules
        self._history = history
        self._learner = learner or RuleLearner(rules, history)

    def _groups(self, rows: list[Transaction]) -> list[_Group]:
        groups: dict[tuple[str, str, str], _Group] = {}
        for txn in rows:
            name = (txn.name or "").strip()
            category = (txn.industry_type or "").strip()
            if not txn.book_id or not name or not category:
                continue
            key = (txn.book_id, name, category)
            if key not in groups:
                groups[key] = _Group(txn.book_id, name, category)
            groups[key].rows.append(txn)
        # Stable sort keeps first-seen order among equal counts.
        return sorted(groups.values(), key=lambda g: -len(g.rows))

    def bootstrap(
        self,
        user_id: int,
        *,
        force: bool = False,
        min_flow_count: int = MIN_FLOW_COUNT,
        max_candidates: int = MAX_CANDIDATES,
    ) -> BootstrapResult:
        """Mine frequent (ledger, merchant, category) groups and learn a rule for each."""

        if not force and self._rules.count(user_id) > 0:
            return BootstrapResult(0, 0, SKIP_RULES_EXIST)

        rows = self._history.transactions(user_id)
        if len(rows) < min_flow_count:
            _logger.info(
                "bootstrap:skip reason=%s user_id=%d flows=%d",
                SKIP_INSUFFICIENT,
                user_id,
                len(rows),
            )
            return BootstrapResult(0, 0, SKIP_INSUFFICIENT)

        cap = per_book_cap(len(rows))
        per_book: dict[str, int] = defaultdict(int)
        picked: list[tuple[_Group, Transaction]] = []
        for group in self._groups(rows)[: max_candidates * 3]:
            if len(picked) >= max_candidates:
                break
            if len(group.rows) < _MIN_SUPPORT or per_book[group.book_id] >= cap:
                continue
            sample = max(group.rows, key=lambda t: t.day)
            if sample.money <= 0:
                continue
            per_book[group.book_id] += 1
            picked.append((group, sample))

        if not picked:
            return BootstrapResult(0, 0, SKIP_NO_CANDIDATES)

        created = 0
        for group, sample in picked:
            try:
                result = self._learner.learn(
                    Correction(
                        user_id=user_id,
                        transaction=sample,
                        target_book_id=group.book_id,
                        target_category=group.category,
                        target_flow_type=sample.flow_type or None,
                    )
                )
            except Exception as e:  # noqa: BLE001
                _logger.warning(
                    "bootstrap:learn_failed book_id=%s name=%s error=%s",
                    group.book_id,
                    group.name,
                    e,
                )
                continue
            if result.success:
                created += 1

        _logger.info(
            "bootstrap:done user_id=%d attempted=%d created=%d cap=%d",
            user_id,
            len(picked),
            created,
            cap,
        )
        return BootstrapResult(created, len(picked), None)
