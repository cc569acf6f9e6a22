# ruff: noqa: E402, I001
import sys
from decimal import Decimal
from pathlib import Path


_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

from ledger_sense.models import MatchingRule, RuleConditions, RuleType  # noqa: E402
from ledger_sense.repositories import InMemoryRules  # noqa: E402
from ledger_sense.rules.engine import RuleEngine, confidence_for, evaluate  # noqa: E402
from tests.helpers.factories import txn  # noqa: E402


def _rule(book: str, kind: RuleType = RuleType.MERCHANT_KEYWORD, *, priority: int = 50, **cond) -> MatchingRule:
    return MatchingRule(
        user_id=0,
        name=f"{kind}:{book}",
        rule_type=kind,
        conditions=RuleConditions(**cond),
        target_book_id=book,
        priority=priority,
    )


def test_merchant_keyword_rule_selects_ledger() -> None:
    store = InMemoryRules([_rule("commute", priority=60, merchant_keywords=("滴滴",))])
    hit = RuleEngine(store).match(txn("滴滴出行"), 0)

    assert hit is not None
    assert hit.rule.target_book_id == "commute"
    assert 0.5 <= hit.confidence <= 0.95


def test_match_records_hit_and_rank_does_not() -> None:
    store = InMemoryRules([_rule("commute", merchant_keywords=("滴滴",))])
    engine = RuleEngine(store)

    engine.rank(txn("滴滴出行"), 0)
    assert store.get(1).hit_count == 0

    engine.match(txn("滴滴出行"), 0)
    engine.match(txn("滴滴出行"), 0, record_hit=False)
    assert store.get(1).hit_count == 1


def test_priority_beats_specificity() -> None:
    store = InMemoryRules(
        [
            _rule("a", merchant_keywords=("星巴克", "瑞幸", "Costa"), priority=50),
            _rule("b", merchant_keywords=("星巴克",), priority=51),
        ]
    )
    hit = RuleEngine(store).match(txn("星巴克"), 0)
    assert hit.rule.target_book_id == "b"


def test_specificity_breaks_priority_tie() -> None:
    store = InMemoryRules(
        [
            _rule("a", merchant_keywords=("星巴克",)),
            _rule("b", merchant_keywords=("星巴克", "瑞幸")),
        ]
    )
    hit = RuleEngine(store).match(txn("星巴克"), 0)
    assert hit.rule.target_book_id == "b"
    assert hit.specificity == 12


def test_exact_tie_goes_to_first_declared_rule() -> None:
    store = InMemoryRules(
        [
            _rule("first", merchant_keywords=("星巴克",)),
            _rule("second", merchant_keywords=("星巴克",)),
        ]
    )
    engine = RuleEngine(store)
    for _ in range(3):
        assert engine.match(txn("星巴克"), 0, record_hit=False).rule.target_book_id == "first"


def test_disabled_and_foreign_rules_are_ignored() -> None:
    disabled = _rule("off", merchant_keywords=("星巴克",))
    disabled.enabled = False
    foreign = _rule("other-user", merchant_keywords=("星巴克",))
    foreign.user_id = 7
    store = InMemoryRules([disabled, foreign])

    assert RuleEngine(store).match(txn("星巴克"), 0) is None


def test_candidate_ledgers_filter_rules() -> None:
    store = InMemoryRules(
        [
            _rule("a", merchant_keywords=("星巴克",), priority=90),
            _rule("b", merchant_keywords=("星巴克",), priority=10),
        ]
    )
    hit = RuleEngine(store).match(txn("星巴克"), 0, candidate_book_ids=["b"])
    assert hit.rule.target_book_id == "b"


def test_amount_range_bounds_are_inclusive() -> None:
    rule = _rule("a", RuleType.AMOUNT_RANGE, min_amount=Decimal(10), max_amount=Decimal(20))
    assert evaluate(rule, txn(money="10")) == 15
    assert evaluate(rule, txn(money="20")) == 15
    assert evaluate(rule, txn(money="20.01")) is None


def test_open_ended_amount_range() -> None:
    rule = _rule("a", RuleType.AMOUNT_RANGE, min_amount=Decimal(1000))
    assert evaluate(rule, txn(money="5000")) == 10
    assert evaluate(rule, txn(money="999")) is None


def test_description_and_pay_type_rules() -> None:
    memo = _rule("a", RuleType.DESCRIPTION_KEYWORD, description_keywords=("报销",))
    pay = _rule("a", RuleType.PAY_TYPE, pay_types=("微信",))
    assert evaluate(memo, txn(description="午餐报销")) == 11
    assert evaluate(memo, txn("报销")) is None
    assert evaluate(pay, txn(pay_type="微信")) == 11
    assert evaluate(pay, txn(pay_type="")) is None


def test_combined_rule_requires_every_condition() -> None:
    rule = _rule(
        "a",
        RuleType.COMBINED,
        merchant_keywords=("星巴克",),
        min_amount=Decimal(20),
        max_amount=Decimal(40),
        pay_types=("微信",),
    )
    assert evaluate(rule, txn("星巴克", "30", pay_type="微信")) == 11 + 15 + 11
    assert evaluate(rule, txn("星巴克", "30", pay_type="支付宝")) is None
    assert evaluate(rule, txn("星巴克", "50", pay_type="微信")) is None
    assert evaluate(_rule("a", RuleType.COMBINED), txn("星巴克")) is None


def test_confidence_is_clamped() -> None:
    low = _rule("a", priority=0)
    high = _rule("a", priority=100)
    high.hit_count = 500
    assert confidence_for(low, 0) == 0.7
    assert confidence_for(high, 100) == 0.95
