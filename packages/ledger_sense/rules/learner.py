"""Synthesis of matching rules from single user corrections.

Before creating anything the learner asks the rule engine whether a rule for
the target ledger already matches the corrected transaction; such a rule is
reinforced (priority +5, hit +1) instead of duplicated.

Otherwise the strategy is picked from the signals the transaction offers:

- a merchant name seen at least three times in history,
- memo keywords seen in at least two historical memos,
- an amount below 1000 (a ±20% window),
- a pay channel.

Two or more signals produce a combined rule whose priority grows with its
condition count. A single signal produces the matching single-kind rule,
falling back in the order listed above, and a bare merchant rule is the last
resort. A transaction without any usable condition yields no rule at all, and
a planned rule identical to a stored one (same kind, conditions and target)
reinforces that rule instead.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from ..logging_setup import get_logger
from ..models import (
    Correction,
    LearnResult,
    MatchingRule,
    RuleConditions,
    RuleSource,
    RuleType,
    Transaction,
)
from ..repositories import HistoryRepository, RuleRepository
from .engine import RuleEngine

_STABLE_MERCHANT_MIN: int = 3
_STABLE_KEYWORD_MIN: int = 2
_MEMO_WINDOW_MAX: int = 4
_MEMO_WINDOW_MIN: int = 2
_MEMO_CANDIDATES: int = 5
_MEMO_RULE_KEYWORDS: int = 3
_COMBINED_MEMO_KEYWORDS: int = 2
_AMOUNT_CEILING = Decimal(1000)
_AMOUNT_LOW_FACTOR = Decimal("0.8")
_AMOUNT_HIGH_FACTOR = Decimal("1.2")

_PRIORITY_MERCHANT: int = 60
_PRIORITY_MEMO: int = 55
_PRIORITY_AMOUNT: int = 50
_PRIORITY_PAY_TYPE: int = 45
_PRIORITY_FALLBACK: int = 40
_PRIORITY_COMBINED_BASE: int = 70
_PRIORITY_COMBINED_STEP: int = 5
_REINFORCE_STEP: int = 5
_PRIORITY_CAP: int = 100

_MEMO_STRIP_RE = re.compile(r"[（()）【】\[\]\s]")

_logger = get_logger("ledger_sense.rules.learner")


def memo_windows(text: str) -> list[str]:
    """Candidate memo keywords: 4-, 3- then 2-character windows, first five."""

    cleaned = _MEMO_STRIP_RE.sub("", text or "")
    out: list[str] = []
    for size in range(_MEMO_WINDOW_MAX, _MEMO_WINDOW_MIN - 1, -1):
        for i in range(0, len(cleaned) - size + 1):
            word = cleaned[i : i + size]
            if word not in out:
                out.append(word)
    return out[:_MEMO_CANDIDATES]


def amount_window(money: Decimal) -> tuple[Decimal, Decimal] | None:
    if not (0 < money < _AMOUNT_CEILING):
        return None
    low = max(0, math.floor(money * _AMOUNT_LOW_FACTOR))
    high = math.ceil(money * _AMOUNT_HIGH_FACTOR)
    return Decimal(low), Decimal(high)


@dataclass(frozen=True, slots=True)
class _Plan:
    rule_type: RuleType
    conditions: RuleConditions
    name: str
    priority: int


class RuleLearner:
    def __init__(self, rules: RuleRepository, history: HistoryRepository) -> None:
        self._rules = rules
        self._history = history
        self._engine = RuleEngine(rules)

    # ---- history signals -------------------------------------------------

    def _merchant_count(self, user_id: int, merchant: str) -> int:
        if not merchant:
            return 0
        key = merchant.casefold()
        return sum(
            1 for t in self._history.transactions(user_id) if (t.name or "").strip().casefold() == key
        )

    def _stable_memo_keywords(self, user_id: int, description: str) -> list[str]:
        candidates = memo_windows(description)
        if not candidates:
            return []
        memos = [t.description for t in self._history.transactions(user_id) if t.description]
        counted: list[tuple[str, int]] = []
        for word in candidates:
            n = sum(1 for memo in memos if word in memo)
            if n >= _STABLE_KEYWORD_MIN:
                counted.append((word, n))
        # sorted() is stable, so equal counts keep extraction order.
        counted = sorted(counted, key=lambda wc: -wc[1])
        return [w for w, _ in counted[:_MEMO_RULE_KEYWORDS]]

    # ---- strategy --------------------------------------------------------

    def plan(self, user_id: int, txn: Transaction) -> _Plan | None:
        merchant = (txn.name or "").strip()
        description = (txn.description or "").strip()
        pay_type = (txn.pay_type or "").strip()

        stable_merchant = bool(merchant) and self._merchant_count(user_id, merchant) >= _STABLE_MERCHANT_MIN
        memo_keywords = self._stable_memo_keywords(user_id, description) if description else []
        window = amount_window(txn.money)

        signals = sum((stable_merchant, bool(memo_keywords), window is not None, bool(pay_type)))
        if signals >= 2:
            conditions = RuleConditions(
                merchant_keywords=(merchant,) if stable_merchant else (),
                description_keywords=tuple(memo_keywords[:_COMBINED_MEMO_KEYWORDS]),
                min_amount=window[0] if window else None,
                max_amount=window[1] if window else None,
                pay_types=(pay_type,) if pay_type else (),
            )
            return _Plan(
                RuleType.COMBINED,
                conditions,
                f"组合规则（{signals}个条件）",
                _PRIORITY_COMBINED_BASE + _PRIORITY_COMBINED_STEP * signals,
            )
        if stable_merchant:
            return _Plan(
                RuleType.MERCHANT_KEYWORD,
                RuleConditions(merchant_keywords=(merchant,)),
                f"交易方：{merchant}",
                _PRIORITY_MERCHANT,
            )
        if memo_keywords:
            return _Plan(
                RuleType.DESCRIPTION_KEYWORD,
                RuleConditions(description_keywords=tuple(memo_keywords)),
                f"备注关键词：{'、'.join(memo_keywords)}",
                _PRIORITY_MEMO,
            )
        if window is not None:
            low, high = window
            return _Plan(
                RuleType.AMOUNT_RANGE,
                RuleConditions(min_amount=low, max_amount=high),
                f"金额区间：{low}-{high}元",
                _PRIORITY_AMOUNT,
            )
        if pay_type:
            return _Plan(
                RuleType.PAY_TYPE,
                RuleConditions(pay_types=(pay_type,)),
                f"支付方式：{pay_type}",
                _PRIORITY_PAY_TYPE,
            )
        if not merchant:
            return None
        return _Plan(
            RuleType.MERCHANT_KEYWORD,
            RuleConditions(merchant_keywords=(merchant,)),
            f"交易方：{merchant}",
            _PRIORITY_FALLBACK,
        )

    # ---- public ----------------------------------------------------------

    def _find_same(self, correction: Correction, plan: _Plan) -> MatchingRule | None:
        for rule in self._rules.list_rules(correction.user_id, enabled_only=False):
            if (
                rule.rule_type == plan.rule_type
                and rule.conditions == plan.conditions
                and rule.target_book_id == correction.target_book_id
                and (rule.target_category or None) == (correction.target_category or None)
            ):
                return rule
        return None

    def _reinforce(self, rule: MatchingRule) -> LearnResult:
        rule.priority = min(_PRIORITY_CAP, rule.priority + _REINFORCE_STEP)
        rule.hit_count += 1
        self._rules.update(rule)
        _logger.info(
            "learner:reinforced rule_id=%s priority=%d hits=%d",
            rule.id,
            rule.priority,
            rule.hit_count,
        )
        return LearnResult(True, rule.id, rule.rule_type, "已存在相似规则，已提高其优先级")

    def learn(self, correction: Correction) -> LearnResult:
        """Create or reinforce a rule so ``correction`` is reproduced next time."""

        txn = correction.transaction
        existing = self._engine.match(
            txn,
            correction.user_id,
            candidate_book_ids=[correction.target_book_id],
            record_hit=False,
        )
        if existing is not None:
            return self._reinforce(existing.rule)

        plan = self.plan(correction.user_id, txn)
        if plan is None:
            _logger.info(
                "learner:no_conditions user_id=%d book_id=%s",
                correction.user_id,
                correction.target_book_id,
            )
            return LearnResult(False, None, None, "该流水缺少可用的规则条件，未生成规则")

        twin = self._find_same(correction, plan)
        if twin is not None:
            return self._reinforce(twin)

        created = self._rules.create(
            MatchingRule(
                user_id=correction.user_id,
                name=plan.name,
                rule_type=plan.rule_type,
                conditions=plan.conditions,
                target_book_id=correction.target_book_id,
                target_category=correction.target_category or None,
                target_flow_type=correction.target_flow_type or None,
                priority=plan.priority,
                enabled=True,
                hit_count=1,
                source=RuleSource.LEARNED,
            )
        )
        _logger.info(
            "learner:created rule_id=%s type=%s priority=%d book_id=%s",
            created.id,
            created.rule_type,
            created.priority,
            created.target_book_id,
        )
        return LearnResult(True, created.id, created.rule_type, f"已生成新规则：{plan.name}")

    def learn_many(self, corrections: Sequence[Correction]) -> list[LearnResult]:
        return [self.learn(c) for c in corrections]
