"""Statement layout sniffing and spreadsheet loading.

Vendors periodically add banner rows above the header, so each known layout
is tried at its nominal header offset and a few neighbours. Detection never
fails: when nothing is confident enough the ``custom`` layout is returned with
a header map built from the first row.
"""

from __future__ import annotations

import csv
from collections.abc import Sequence
from dataclasses import dataclass
from io import StringIO
from os import PathLike
from pathlib import Path
from typing import Any

from .cells import cell_text
from .logging_setup import get_logger
from .models import LayoutDetection

type Row = Sequence[Any]
type Matrix = Sequence[Row]

ALIPAY = "alipay"
WXPAY = "wxpay"
JD = "jd"
WACAI = "wacai"
CUSTOM = "custom"

_THRESHOLD: float = 0.6
_CUSTOM_CONFIDENCE: float = 0.5
_WACAI_MIN_MATCHES: int = 3
_WACAI_SCAN_ROWS: int = 3
# utf-8 is strict enough to reject GBK bytes, the reverse is not true.
_CSV_ENCODINGS: tuple[str, ...] = ("utf-8-sig", "gb18030")

_logger = get_logger("ledger_sense.formats")


@dataclass(frozen=True, slots=True)
class _HeaderLayout:
    layout: str
    offsets: tuple[int, ...]
    required: tuple[str, ...]
    # When True every non-empty header cell joins the column map, not only the
    # required ones.
    map_all: bool = True


_HEADER_LAYOUTS: tuple[_HeaderLayout, ...] = (
    _HeaderLayout(
        ALIPAY,
        (24, 23, 22, 25, 26),
        ("交易时间", "收/支", "交易分类", "交易对方", "商品说明", "金额"),
    ),
    _HeaderLayout(
        WXPAY,
        (16, 15, 14, 17, 18),
        ("交易时间", "收/支", "交易类型", "商品", "金额(元)", "交易对方"),
    ),
    _HeaderLayout(
        JD,
        (21,),
        ("交易时间", "收/支", "交易分类", "交易说明", "金额", "商户名称"),
        map_all=False,
    ),
)

WACAI_KEYS: tuple[str, ...] = (
    "日期",
    "日期时间",
    "时间",
    "类型",
    "类别",
    "分类",
    "金额",
    "币种",
    "账户",
    "收付账户",
    "收支账户",
    "账户名称",
    "收付款人",
    "交易对方",
    "商家",
    "备注",
    "标签",
    "属性",
    "参与人",
)


def _header_map(row: Row) -> dict[str, int]:
    out: dict[str, int] = {}
    for idx, cell in enumerate(row):
        text = cell_text(cell)
        if text and text not in out:
            out[text] = idx
    return out


def _score_header_layout(matrix: Matrix, candidate: _HeaderLayout) -> LayoutDetection | None:
    best: LayoutDetection | None = None
    # ``offsets`` starts with the nominal offset; a strict ``>`` keeps it on ties.
    for offset in candidate.offsets:
        if offset >= len(matrix):
            continue
        row_map = _header_map(matrix[offset])
        found = [h for h in candidate.required if h in row_map]
        confidence = len(found) / len(candidate.required)
        if best is not None and confidence <= best.confidence:
            continue
        headers = row_map if candidate.map_all else {h: row_map[h] for h in found}
        best = LayoutDetection(candidate.layout, offset, headers, confidence)
    return best


def _score_wacai(matrix: Matrix) -> LayoutDetection | None:
    best: LayoutDetection | None = None
    for offset in range(min(_WACAI_SCAN_ROWS, len(matrix))):
        row_map = _header_map(matrix[offset])
        if not row_map:
            continue
        matches = sum(1 for header in row_map if any(k in header for k in WACAI_KEYS))
        if matches < _WACAI_MIN_MATCHES:
            continue
        confidence = min(1.0, matches / max(1, min(len(WACAI_KEYS), len(row_map))))
        if best is None or confidence > best.confidence:
            best = LayoutDetection(WACAI, offset, row_map, confidence)
    return best


def detect_layout(matrix: Matrix) -> LayoutDetection:
    """Return the most plausible layout for ``matrix``.

    Layouts are tried in a fixed order (alipay, wxpay, jd, wacai). The highest
    confidence at or above the threshold wins; earlier layouts win ties.
    """

    candidates: list[LayoutDetection] = []
    for candidate in _HEADER_LAYOUTS:
        found = _score_header_layout(matrix, candidate)
        if found is not None:
            candidates.append(found)
    wacai = _score_wacai(matrix)
    if wacai is not None:
        candidates.append(wacai)

    best: LayoutDetection | None = None
    for cand in candidates:
        if cand.confidence < _THRESHOLD:
            continue
        if best is None or cand.confidence > best.confidence:
            best = cand

    if best is not None:
        _logger.info(
            "formats:detected layout=%s header_row=%d confidence=%.2f",
            best.layout,
            best.header_row,
            best.confidence,
        )
        return best

    headers = _header_map(matrix[0]) if matrix else {}
    _logger.warning("formats:fallback_custom rows=%d headers=%d", len(matrix), len(headers))
    return LayoutDetection(CUSTOM, 0, headers, _CUSTOM_CONFIDENCE)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _decode(data: bytes) -> str:
    for encoding in _CSV_ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ValueError("unable to decode CSV with any supported encoding")


def read_csv_rows(data: bytes) -> list[list[str]]:
    text = _decode(data)
    with StringIO(text) as f:
        return [list(row) for row in csv.reader(f)]


def read_xlsx_rows(path: str | PathLike[str]) -> list[list[Any]]:
    """Return the first worksheet as a list of value rows."""

    from openpyxl import load_workbook

    wb = load_workbook(filename=path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        return [list(row) for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def read_rows(path: str | PathLike[str]) -> list[list[Any]]:
    """Load a statement export (``.csv``, ``.xlsx`` or ``.xlsm``) as a row matrix."""

    p = Path(path)
    suffix = p.suffix.lower()
    if suffix in (".xlsx", ".xlsm"):
        return read_xlsx_rows(p)
    if suffix == ".csv":
        return read_csv_rows(p.read_bytes())
    raise ValueError(f"unsupported statement file type: {p.suffix or p.name}")
