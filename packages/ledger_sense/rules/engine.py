"""Evaluation of stored matching rules.

The winner maximises ``priority * 100 + specificity``; the sort is stable so
rules declared earlier win exact ties. Confidence blends priority, hit count
and specificity into ``[0.5, 0.95]``.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from ..logging_setup import get_logger
from ..models import MatchingRule, RuleConditions, RuleMatch, RuleType, Transaction
from ..repositories import RuleRepository

_BASE_SPECIFICITY: int = 10
_NARROW_AMOUNT_WIDTH = Decimal(50)
_NARROW_AMOUNT_BONUS: int = 5

_CONF_BASE: float = 0.7
_CONF_MIN: float = 0.5
_CONF_MAX: float = 0.95

_logger = get_logger("ledger_sense.rules.engine")


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    hay = (text or "").lower()
    return any(k and k.lower() in hay for k in keywords)


def _amount_in_range(money: Decimal, cond: RuleConditions) -> bool:
    low = cond.min_amount if cond.min_amount is not None else Decimal(0)
    if money < low:
        return False
    return cond.max_amount is None or money <= cond.max_amount


def _amount_specificity(cond: RuleConditions) -> int:
    score = _BASE_SPECIFICITY
    if cond.min_amount is not None and cond.max_amount is not None:
        if cond.max_amount - cond.min_amount < _NARROW_AMOUNT_WIDTH:
            score += _NARROW_AMOUNT_BONUS
    return score


def _pay_type_hit(pay_type: str, pay_types: Sequence[str]) -> bool:
    return bool(pay_type) and any(p and p in pay_type for p in pay_types)


def evaluate(rule: MatchingRule, txn: Transaction) -> int | None:
    """Return the rule's specificity when it matches ``txn``, else ``None``."""

    cond = rule.conditions
    kind = rule.rule_type
    if kind == RuleType.MERCHANT_KEYWORD:
        if cond.merchant_keywords and _contains_any(txn.name, cond.merchant_keywords):
            return _BASE_SPECIFICITY + len(cond.merchant_keywords)
    elif kind == RuleType.DESCRIPTION_KEYWORD:
        if cond.description_keywords and _contains_any(txn.description, cond.description_keywords):
            return _BASE_SPECIFICITY + len(cond.description_keywords)
    elif kind == RuleType.AMOUNT_RANGE:
        if cond.has_amount and _amount_in_range(txn.money, cond):
            return _amount_specificity(cond)
    elif kind == RuleType.PAY_TYPE:
        if cond.pay_types and _pay_type_hit(txn.pay_type, cond.pay_types):
            return _BASE_SPECIFICITY + len(cond.pay_types)
    elif kind == RuleType.COMBINED:
        return _evaluate_combined(cond, txn)
    return None


def _evaluate_combined(cond: RuleConditions, txn: Transaction) -> int | None:
    score = 0
    checked = 0
    if cond.merchant_keywords:
        if not _contains_any(txn.name, cond.merchant_keywords):
            return None
        score += _BASE_SPECIFICITY + len(cond.merchant_keywords)
        checked += 1
    if cond.description_keywords:
        if not _contains_any(txn.description, cond.description_keywords):
            return None
        score += _BASE_SPECIFICITY + len(cond.description_keywords)
        checked += 1
    if cond.has_amount:
        if not _amount_in_range(txn.money, cond):
            return None
        score += _amount_specificity(cond)
        checked += 1
    if cond.pay_types:
        if not _pay_type_hit(txn.pay_type, cond.pay_types):
            return None
        score += _BASE_SPECIFICITY + len(cond.pay_types)
        checked += 1
    return score if checked else None


def confidence_for(rule: MatchingRule, specificity: int) -> float:
    conf = _CONF_BASE + min(max(rule.priority, 0), 100) / 100 * 0.2
    if rule.hit_count > 0:
        conf += min(rule.hit_count / 100, 0.1)
    conf += min(specificity / 100, 0.1)
    return round(min(_CONF_MAX, max(_CONF_MIN, conf)), 4)


class RuleEngine:
    """Ranks a user's enabled rules against one transaction at a time."""

    def __init__(self, rules: RuleRepository) -> None:
        self._rules = rules

    def rank(
        self,
        txn: Transaction,
        user_id: int,
        *,
        candidate_book_ids: Sequence[str] | None = None,
    ) -> list[RuleMatch]:
        """All matching rules, best first. Does not touch hit counters."""

        allowed = set(candidate_book_ids) if candidate_book_ids else None
        matches: list[RuleMatch] = []
        for rule in self._rules.list_rules(user_id, enabled_only=True):
            if not rule.enabled:
                continue
            if allowed is not None and rule.target_book_id not in allowed:
                continue
            specificity = evaluate(rule, txn)
            if specificity is None:
                continue
            matches.append(RuleMatch(rule, confidence_for(rule, specificity), specificity))
        matches.sort(key=lambda m: m.rule.priority * 100 + m.specificity, reverse=True)
        return matches

    def match(
        self,
        txn: Transaction,
        user_id: int,
        *,
        candidate_book_ids: Sequence[str] | None = None,
        record_hit: bool = True,
    ) -> RuleMatch | None:
        """Return the winning rule for ``txn`` and bump its hit counter."""

        try:
            ranked = self.rank(txn, user_id, candidate_book_ids=candidate_book_ids)
        except Exception as e:  # noqa: BLE001
            _logger.warning("rules:match_failed user_id=%d error=%s", user_id, e)
            return None
        if not ranked:
            return None
        best = ranked[0]
        if record_hit and best.rule.id is not None:
            try:
                self._rules.increment_hit(best.rule.id)
            except Exception as e:  # noqa: BLE001
                _logger.warning("rules:hit_update_failed rule_id=%s error=%s", best.rule.id, e)
        _logger.debug(
            "rules:matched rule_id=%s book_id=%s confidence=%.2f specificity=%d",
            best.rule.id,
            best.rule.target_book_id,
            best.confidence,
            best.specificity,
        )
        return best
