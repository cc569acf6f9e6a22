"""Coercion of raw spreadsheet cells into amounts, dates and text."""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

_CURRENCY_MARKS: tuple[str, ...] = ("¥", "￥", "$", "RMB", "CNY")
_EXCEL_EPOCH = datetime(1899, 12, 30)
_DATE_RE = re.compile(r"(\d{4})[-/.年](\d{1,2})[-/.月](\d{1,2})")
_LEADING_NUMBER_RE = re.compile(r"^\s*[-+]?[¥￥]?\s*(\d[\d,]*\.?\d*|\.\d+)")
_CENT = Decimal("0.01")


def cell_text(value: Any) -> str:
    """Return a cell as stripped text; ``None`` becomes ``""``."""

    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def to_decimal(raw: Any) -> Decimal:
    """Parse a signed amount from a cell.

    Accepts numeric cells, currency symbols, thousands separators, explicit
    signs and accounting parentheses in any order. Raises ``ValueError`` for
    empty or unparseable input.
    """

    if raw is None:
        raise ValueError("amount is required")
    if isinstance(raw, bool):
        raise ValueError(f"invalid amount: {raw!r}")
    if isinstance(raw, int | Decimal):
        return Decimal(raw)
    if isinstance(raw, float):
        return Decimal(str(raw))

    s = str(raw).strip()
    if not s:
        raise ValueError("amount is empty")

    negative = False
    while True:
        changed = False
        if s.startswith("+"):
            s = s[1:].lstrip()
            changed = True
        elif s.startswith("-"):
            negative = True
            s = s[1:].lstrip()
            changed = True
        for mark in _CURRENCY_MARKS:
            if s.upper().startswith(mark):
                s = s[len(mark) :].lstrip()
                changed = True
        if s.startswith("(") and s.endswith(")") and len(s) >= 2:
            negative = True
            s = s[1:-1].strip()
            changed = True
        if not changed:
            break

    s = s.replace(",", "").replace("，", "").strip()
    try:
        d = Decimal(s)
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {raw!r}") from exc
    if not d.is_finite():
        raise ValueError(f"invalid amount: {raw!r}")
    return -abs(d) if negative else d


def leading_decimal(raw: Any) -> Decimal:
    """Parse only the numeric prefix of a cell such as ``"12.50(已退款)"``."""

    if isinstance(raw, int | float | Decimal) and not isinstance(raw, bool):
        return to_decimal(raw)
    m = _LEADING_NUMBER_RE.match(cell_text(raw))
    if not m:
        raise ValueError(f"invalid amount: {raw!r}")
    return to_decimal(m.group(1))


def round_money(d: Decimal) -> Decimal:
    return d.quantize(_CENT, rounding=ROUND_HALF_UP)


def format_money(d: Decimal) -> str:
    return f"{round_money(d):.2f}"


def normalize_day(value: Any) -> str | None:
    """Normalize a date cell to ``YYYY-MM-DD``.

    Supports ``datetime``/``date`` cells, spreadsheet serial numbers and text
    such as ``2024-03-01 12:00:00`` or ``2024/3/1``. Returns ``None`` for blank or
    digit-free cells and raises ``ValueError`` for text that carries no date.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, int | float | Decimal) and not isinstance(value, bool):
        serial = float(value)
        if serial <= 0:
            raise ValueError(f"invalid serial date: {value!r}")
        return (_EXCEL_EPOCH + timedelta(days=int(serial))).strftime("%Y-%m-%d")

    s = str(value).strip()
    if not s or not any(ch.isdigit() for ch in s):
        return None
    m = _DATE_RE.search(s)
    if m:
        y, mo, d = (int(part) for part in m.groups())
        return date(y, mo, d).isoformat()
    try:
        serial = float(s)
    except ValueError as exc:
        raise ValueError(f"invalid date: {value!r}") from exc
    return normalize_day(serial)


def parse_day(day: str) -> date | None:
    try:
        return date.fromisoformat(day[:10])
    except ValueError:
        return None
