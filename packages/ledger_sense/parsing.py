"""Row parsers turning statement rows into normalized transactions.

One parser per layout. Every parser reads cells through :class:`_RowView`
and hands its fields to :func:`_finish`, which applies the rules shared by
all layouts: rows without a date or with a zero amount are dropped, money is
kept positive and the direction falls back to the amount's sign.

The memo (``description``) only carries what the statement itself wrote as a
note; pay channel, account and amount text never leak into it.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from decimal import Decimal
from os import PathLike
from pathlib import Path
from typing import Any

from . import formats
from .cells import cell_text, leading_decimal, normalize_day, round_money, to_decimal
from .logging_setup import get_logger
from .models import (
    EXPENSE,
    INCOME,
    NOT_COUNTED,
    LayoutDetection,
    ParseIssue,
    ParseResult,
    Transaction,
    TransactionMeta,
)

_logger = get_logger("ledger_sense.parsing")

_MEMO_SEPARATOR = " | "

_WALLET_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("支付宝", ("支付宝", "余额宝", "花呗")),
    ("微信", ("微信", "零钱", "财付通")),
)
_CASH_KEYWORDS: tuple[str, ...] = ("现金",)
_BANK_KEYWORDS: tuple[str, ...] = (
    "建设银行",
    "工商银行",
    "农业银行",
    "中国银行",
    "交通银行",
    "招商银行",
    "浦发银行",
    "民生银行",
    "兴业银行",
    "光大银行",
    "华夏银行",
    "中信银行",
    "平安银行",
    "广发银行",
    "邮储银行",
    "储蓄卡",
    "借记卡",
    "信用卡",
    "银行卡",
)


def infer_pay_type(text: str) -> str:
    """Map free-form account or channel text to a pay-channel tag (or ``""``)."""

    if not text:
        return ""
    for tag, keywords in _WALLET_KEYWORDS:
        if any(k in text for k in keywords):
            return tag
    if any(k in text for k in _CASH_KEYWORDS):
        return "现金"
    if any(k in text for k in _BANK_KEYWORDS):
        return "银行卡"
    return ""


class _RowView:
    """Header-aware accessor over one raw row."""

    __slots__ = ("_row", "_headers")

    def __init__(self, row: Sequence[Any], headers: Mapping[str, int]) -> None:
        self._row = row
        self._headers = headers

    def cell(self, column: str) -> Any:
        idx = self._headers.get(column)
        if idx is None or idx >= len(self._row):
            return None
        return self._row[idx]

    def text(self, *columns: str) -> str:
        """Return the first non-empty cell among exact ``columns``."""

        for column in columns:
            value = cell_text(self.cell(column))
            if value:
                return value
        return ""

    def _column_for(self, keyword: str) -> str | None:
        needle = keyword.lower()
        for header in self._headers:
            if needle in header.lower():
                return header
        return None

    def find_cell(self, *keywords: str) -> Any:
        """Return the cell of the first header containing one of ``keywords``."""

        for keyword in keywords:
            column = self._column_for(keyword)
            if column is None:
                continue
            value = self.cell(column)
            if cell_text(value):
                return value
        return None

    def find(self, *keywords: str) -> str:
        return cell_text(self.find_cell(*keywords))


def _not_slash(value: str) -> str:
    # WeChat exports write "/" for empty cells.
    return "" if value == "/" else value


def _join_memo(*parts: str) -> str:
    seen: list[str] = []
    for part in parts:
        p = part.strip()
        if p and p not in seen:
            seen.append(p)
    return _MEMO_SEPARATOR.join(seen)


def _finish(
    *,
    day_cell: Any,
    amount: Decimal | None,
    flow_type: str,
    **fields: str,
) -> Transaction | None:
    day = normalize_day(day_cell)
    if day is None or amount is None or amount == 0:
        return None
    flow = flow_type.strip() or (EXPENSE if amount < 0 else INCOME)
    return Transaction(day=day, flow_type=flow, money=round_money(abs(amount)), **fields)


def _amount(value: Any, parse: Callable[[Any], Decimal] = to_decimal) -> Decimal | None:
    if not cell_text(value):
        return None
    return parse(value)


# ---------------------------------------------------------------------------
# Layout parsers
# ---------------------------------------------------------------------------


def _parse_alipay(view: _RowView) -> Transaction | None:
    return _finish(
        day_cell=view.cell("交易时间"),
        amount=_amount(view.cell("金额")),
        flow_type=view.text("收/支"),
        name=view.text("交易对方"),
        industry_type=view.text("交易分类"),
        pay_type="支付宝",
        goods=view.text("商品说明"),
        account_name=view.text("收/付款方式"),
        description=view.text("备注"),
        attribution=view.text("流水归属"),
    )


def _parse_wxpay(view: _RowView) -> Transaction | None:
    direction = view.text("收/支")
    if direction == "/":
        direction = NOT_COUNTED
    goods = _not_slash(view.text("商品"))
    return _finish(
        day_cell=view.cell("交易时间"),
        amount=_amount(view.cell("金额(元)")),
        flow_type=direction,
        name=_not_slash(view.text("交易对方")) or goods,
        industry_type=_not_slash(view.text("交易类型")),
        pay_type="微信",
        goods=goods,
        account_name=_not_slash(view.text("支付方式", "支付渠道")),
        description=_not_slash(view.text("备注")),
        attribution=view.text("流水归属"),
    )


def _parse_jd(view: _RowView) -> Transaction | None:
    name = view.text("交易说明")
    merchant = view.text("商户名称")
    return _finish(
        day_cell=view.cell("交易时间"),
        amount=_amount(view.cell("金额"), leading_decimal),
        flow_type=view.text("收/支"),
        name=name,
        industry_type=view.text("交易分类"),
        pay_type="京东金融",
        account_name=view.text("收/付款方式", "支付方式"),
        description=_join_memo(merchant if merchant != name else "", view.text("备注")),
        attribution=view.text("流水归属"),
    )


def _parse_wacai(view: _RowView) -> Transaction | None:
    account = view.find("收付账户", "账户", "账户名称", "账户名", "收支账户")
    return _finish(
        day_cell=view.find_cell("日期时间", "日期", "时间"),
        amount=_amount(view.find_cell("金额")),
        flow_type=view.find("类型", "流水类型", "收支"),
        name=view.find("收付款人", "交易对方", "商家"),
        industry_type=view.find("分类", "类别"),
        pay_type=infer_pay_type(account),
        account_name=account,
        description=_join_memo(view.find("备注", "说明"), view.find("标签"), view.find("参与人")),
        attribution=view.find("流水归属", "归属"),
    )


def _parse_custom(view: _RowView) -> Transaction | None:
    account = view.find("支付方式", "收/付款方式", "账户", "account")
    return _finish(
        day_cell=view.find_cell("交易时间", "时间", "日期", "date"),
        amount=_amount(view.find_cell("金额", "amount", "money")),
        flow_type=view.find("收/支", "收支", "类型", "type"),
        name=view.find("交易对方", "对方", "商户", "商家", "收付款人", "name", "merchant"),
        industry_type=view.find("分类", "类别", "category"),
        pay_type=infer_pay_type(account),
        goods=view.find("商品", "goods"),
        account_name=account,
        description=view.find("备注", "说明", "description", "memo"),
        attribution=view.find("流水归属", "归属"),
    )


_PARSERS: dict[str, Callable[[_RowView], Transaction | None]] = {
    formats.ALIPAY: _parse_alipay,
    formats.WXPAY: _parse_wxpay,
    formats.JD: _parse_jd,
    formats.WACAI: _parse_wacai,
    formats.CUSTOM: _parse_custom,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_rows(
    matrix: Sequence[Sequence[Any]],
    detection: LayoutDetection,
    *,
    source_file: str | None = None,
) -> ParseResult:
    """Parse every data row below ``detection.header_row``.

    A failing row is recorded as a :class:`ParseIssue` and skipped; it never
    aborts the file.
    """

    parser = _PARSERS.get(detection.layout)
    if parser is None:
        raise ValueError(f"unknown layout: {detection.layout!r}")

    headers = dict(detection.headers)
    result = ParseResult(detection=detection)
    dropped = 0
    for row_index in range(detection.header_row + 1, len(matrix)):
        row = matrix[row_index]
        if not any(cell_text(c) for c in row):
            continue
        try:
            txn = parser(_RowView(row, headers))
        except (ValueError, ArithmeticError) as e:
            result.issues.append(ParseIssue(row_index, str(e)))
            continue
        if txn is None:
            dropped += 1
            continue
        txn.meta = TransactionMeta(
            original_row=tuple(row),
            headers=headers,
            source_file=source_file,
            layout=detection.layout,
            row_index=row_index,
        )
        result.transactions.append(txn)

    _logger.info(
        "parsing:done layout=%s parsed=%d dropped=%d issues=%d",
        detection.layout,
        len(result.transactions),
        dropped,
        len(result.issues),
    )
    return result


def parse_matrix(
    matrix: Sequence[Sequence[Any]], *, source_file: str | None = None
) -> ParseResult:
    return parse_rows(matrix, formats.detect_layout(matrix), source_file=source_file)


def parse_file(path: str | PathLike[str]) -> ParseResult:
    """Read, sniff and parse a statement export from disk."""

    p = Path(path)
    return parse_matrix(formats.read_rows(p), source_file=p.name)
