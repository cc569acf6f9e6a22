"""Refund and family-account pair resolution over a parsed statement.

Two detectors tag rows first (family-account duplicates, then refunds). Each
tagged row then looks for its twin among the other unpaired rows; the best
candidate minimises ``days * 100 + |amount diff| + penalty`` where the
penalty reflects how the two rows were linked (name 0, memo 20, relaxed
WeChat full-refund status 80).

Outcomes:

- full refund: both originals are shown, both unselected;
- partial refund: one merged expense of ``expense - refund`` replaces them;
- family pair: the expense twin is shown unselected next to a merged expense
  built from the not-counted twin, which is selected;
- refund without a twin: shown alone with a refund badge.

Every resolved row carries a ``pair_id``. Rows that already have one are
passed through untouched and are never offered as candidates, so running the
resolver on its own output changes nothing.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from decimal import Decimal

from .cells import parse_day, round_money
from .logging_setup import get_logger
from .models import (
    EXPENSE,
    INCOME,
    PairedTransaction,
    SpecialPatternResult,
    Transaction,
)

_logger = get_logger("ledger_sense.special_patterns")

_PAIR_WINDOW_DAYS: int = 30
_TOLERANCE = Decimal("0.01")

_PENALTY_NAME: int = 0
_PENALTY_MEMO: int = 20
_PENALTY_RELAXED_WX: int = 80

_REFUND_MEMO_WORDS: tuple[str, ...] = ("退款", "退货", "已全额退款", "已退款", "退款成功")
_WX_FAMILY_WORDS: tuple[str, ...] = ("亲属卡", "亲情账户")
_ALIPAY_FAMILY_WORDS: tuple[str, ...] = ("亲友代付", "亲情账户", "亲情卡")

BADGE_REFUND = "退款"
BADGE_PARTIAL_REFUND = "部分退款"
BADGE_FAMILY = "亲情代付"

KIND_FULL_REFUND = "full_refund"
KIND_PARTIAL_REFUND = "partial_refund"
KIND_FAMILY = "family"
KIND_LONE_REFUND = "lone_refund"

_NOISE_RE = re.compile(
    r"(亲情账户|亲属卡|亲友代付|亲情卡|代付|已全额退款|退款成功|已退款|退款|退货"
    r"|转账到|转账至|转账给|转给|转至|转到|借给|还款给)"
)
_PUNCT_RE = re.compile(r"[\s\-_:：,，。;；()（）\[\]【】/|]+")


def _clean(text: str) -> str:
    return _PUNCT_RE.sub("", _NOISE_RE.sub("", text or "")).lower()


def _overlaps(a: str, b: str) -> bool:
    ca, cb = _clean(a), _clean(b)
    if not ca or not cb:
        return False
    return ca in cb or cb in ca


def is_refund(txn: Transaction) -> bool:
    if "退款" in txn.flow_type or "退款" in txn.industry_type:
        return True
    if any(w in txn.description for w in _REFUND_MEMO_WORDS):
        return True
    return txn.flow_type == INCOME and ("退款" in txn.goods or "退货" in txn.goods)


def is_family_duplicate(txn: Transaction) -> bool:
    haystacks = (txn.industry_type, txn.description, txn.name)
    if txn.pay_type == "微信":
        words = _WX_FAMILY_WORDS
    elif txn.pay_type == "支付宝":
        words = _ALIPAY_FAMILY_WORDS
    else:
        return False
    return any(w in h for w in words for h in haystacks)


def _days_apart(a: Transaction, b: Transaction) -> int | None:
    da, db = parse_day(a.day), parse_day(b.day)
    if da is None or db is None:
        return None
    return abs((da - db).days)


def _link_penalty(target: Transaction, cand: Transaction, *, relaxed_wx: bool) -> int | None:
    if _overlaps(target.name, cand.name):
        return _PENALTY_NAME
    if (
        _overlaps(target.description, cand.description)
        or _overlaps(target.description, cand.name)
        or _overlaps(target.name, cand.description)
    ):
        return _PENALTY_MEMO
    if relaxed_wx and _relaxed_wx_refund(target, cand):
        return _PENALTY_RELAXED_WX
    return None


def _relaxed_wx_refund(refund: Transaction, expense: Transaction) -> bool:
    if refund.pay_type != "微信" or expense.pay_type != "微信":
        return False
    if "退款" not in refund.industry_type:
        return False
    return "已全额退款" in refund.raw("当前状态") and "已全额退款" in expense.raw("当前状态")


@dataclass(slots=True)
class _Candidate:
    index: int
    score: Decimal


class _Resolver:
    def __init__(self, rows: list[Transaction]) -> None:
        self.rows = rows
        self.open = {i for i, t in enumerate(rows) if t.meta.pair_id is None}
        self.claimed: set[int] = set()
        self.seq = 0

    def next_pair_id(self, prefix: str) -> str:
        self.seq += 1
        return f"{prefix}-{self.seq}"

    def best_match(
        self,
        target_index: int,
        *,
        want_expense: bool,
        amount_ok: Callable[[Transaction, Transaction], bool],
        relaxed_wx: bool = False,
        family_only: bool = False,
    ) -> int | None:
        target = self.rows[target_index]
        best: _Candidate | None = None
        for j in sorted(self.open - self.claimed):
            if j == target_index:
                continue
            cand = self.rows[j]
            if want_expense != (cand.flow_type == EXPENSE):
                continue
            if cand.meta.is_refund or (family_only and not cand.meta.is_family):
                continue
            if not amount_ok(target, cand):
                continue
            days = _days_apart(target, cand)
            if days is None or days > _PAIR_WINDOW_DAYS:
                continue
            penalty = _link_penalty(target, cand, relaxed_wx=relaxed_wx)
            if penalty is None:
                continue
            score = Decimal(days * 100) + abs(target.money - cand.money) + penalty
            if best is None or score < best.score:
                best = _Candidate(j, score)
        return best.index if best is not None else None


def _same_amount(a: Transaction, b: Transaction) -> bool:
    return abs(a.money - b.money) <= _TOLERANCE


def _refund_fits(refund: Transaction, expense: Transaction) -> bool:
    return expense.money + _TOLERANCE >= refund.money


def _tag(txn: Transaction, pair_id: str, badge: str, badge_type: str, *, selected: bool) -> None:
    txn.meta.pair_id = pair_id
    txn.meta.badge = badge
    txn.meta.badge_type = badge_type
    txn.meta.selected = selected


def build_family_merged(not_counted: Transaction, expense: Transaction) -> Transaction:
    """Merge a family-account twin pair into one expense.

    Category, name and goods come from the not-counted twin's raw columns; the
    pay channel, pay method and order id come from the expense twin.
    """

    name = not_counted.raw("交易对方") or not_counted.raw("商品") or not_counted.name
    name = _NOISE_RE.sub("", name).strip() or name
    industry = not_counted.raw("交易分类") or not_counted.raw("交易类型") or not_counted.industry_type
    goods = not_counted.raw("商品说明") or not_counted.raw("商品") or not_counted.goods
    pay_method = expense.raw("收/付款方式") or expense.raw("支付方式") or expense.account_name
    order_id = expense.raw("交易订单号") or expense.raw("交易单号")
    remark = not_counted.raw("备注") or not_counted.description
    if remark == "/":
        remark = ""
    memo_parts = [f"订单号:{order_id}" if order_id else "", remark]
    return replace(
        not_counted,
        flow_type=EXPENSE,
        money=expense.money,
        name=name,
        industry_type=industry,
        goods=goods,
        pay_type=expense.pay_type,
        account_name=pay_method,
        description="-".join(p for p in memo_parts if p),
        meta=replace(not_counted.meta, related=(not_counted, expense)),
    )


def build_partial_refund(expense: Transaction, refund: Transaction) -> Transaction:
    remaining = round_money(expense.money - refund.money)
    memo = f"{expense.description} [部分退款: -{round_money(refund.money)}元]".strip()
    return replace(
        expense,
        money=remaining,
        description=memo,
        meta=replace(expense.meta, related=(expense, refund), merged_money=remaining),
    )


def resolve_special_patterns(transactions: Iterable[Transaction]) -> SpecialPatternResult:
    """Detect, pair and order refund and family-account rows for display."""

    rows = list(transactions)
    r = _Resolver(rows)

    for i in sorted(r.open):
        txn = rows[i]
        txn.meta.is_family = is_family_duplicate(txn)
        txn.meta.is_refund = not txn.meta.is_family and is_refund(txn)

    pairs: list[PairedTransaction] = []
    family_rows: list[Transaction] = []
    full_rows: list[Transaction] = []
    partial_rows: list[Transaction] = []
    lone_rows: list[Transaction] = []

    for i in sorted(r.open):
        if i in r.claimed or not rows[i].meta.is_family:
            continue
        txn = rows[i]
        if txn.flow_type == EXPENSE:
            j = r.best_match(i, want_expense=False, amount_ok=_same_amount, family_only=True)
            pair = (j, i) if j is not None else None
        else:
            j = r.best_match(i, want_expense=True, amount_ok=_same_amount)
            pair = (i, j) if j is not None else None
        if pair is None:
            continue
        nc_index, exp_index = pair
        not_counted, expense = rows[nc_index], rows[exp_index]
        r.claimed.update(pair)
        pair_id = r.next_pair_id("family")
        merged = build_family_merged(not_counted, expense)
        _tag(expense, pair_id, BADGE_FAMILY, "info", selected=False)
        expense.meta.is_family = True
        _tag(merged, pair_id, BADGE_FAMILY, "info", selected=True)
        merged.meta.is_family = True
        pairs.append(PairedTransaction(pair_id, KIND_FAMILY, (not_counted, expense), merged))
        ordered = sorted(((nc_index, merged), (exp_index, expense)), key=lambda p: p[0])
        family_rows.extend(t for _, t in ordered)

    for i in sorted(r.open):
        if i in r.claimed or not rows[i].meta.is_refund:
            continue
        refund = rows[i]
        r.claimed.add(i)
        j = r.best_match(i, want_expense=True, amount_ok=_refund_fits, relaxed_wx=True)
        if j is None:
            pair_id = r.next_pair_id("refund")
            _tag(refund, pair_id, BADGE_REFUND, "info", selected=True)
            pairs.append(PairedTransaction(pair_id, KIND_LONE_REFUND, (refund,)))
            lone_rows.append(refund)
            continue

        expense = rows[j]
        r.claimed.add(j)
        pair_id = r.next_pair_id("refund")
        diff = round_money(expense.money - refund.money)
        if abs(diff) <= _TOLERANCE:
            _tag(expense, pair_id, BADGE_REFUND, "info", selected=False)
            _tag(refund, pair_id, BADGE_REFUND, "info", selected=False)
            pairs.append(PairedTransaction(pair_id, KIND_FULL_REFUND, (expense, refund)))
            full_rows.extend([expense, refund] if j < i else [refund, expense])
        else:
            merged = build_partial_refund(expense, refund)
            _tag(merged, pair_id, BADGE_PARTIAL_REFUND, "warning", selected=True)
            expense.meta.pair_id = pair_id
            refund.meta.pair_id = pair_id
            pairs.append(PairedTransaction(pair_id, KIND_PARTIAL_REFUND, (expense, refund), merged))
            partial_rows.append(merged)

    normal_rows = [t for i, t in enumerate(rows) if i not in r.claimed]
    display = normal_rows + full_rows + partial_rows + family_rows + lone_rows
    stats = {
        "total": len(display),
        "full_refund": sum(1 for p in pairs if p.kind == KIND_FULL_REFUND),
        "partial_refund": sum(1 for p in pairs if p.kind == KIND_PARTIAL_REFUND),
        "family": sum(1 for p in pairs if p.kind == KIND_FAMILY),
        "lone_refund": sum(1 for p in pairs if p.kind == KIND_LONE_REFUND),
    }
    _logger.info(
        "special_patterns:done total=%d full_refund=%d partial_refund=%d family=%d lone_refund=%d",
        stats["total"],
        stats["full_refund"],
        stats["partial_refund"],
        stats["family"],
        stats["lone_refund"],
    )
    return SpecialPatternResult(display=display, pairs=pairs, stats=stats)
