# ruff: noqa: E402, I001
import sys
from pathlib import Path

import pytest


_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

from ledger_sense import formats  # noqa: E402
from tests.helpers.factories import matrix_with_header  # noqa: E402

ALIPAY_HEADER = ["交易时间", "交易分类", "交易对方", "商品说明", "收/支", "金额", "收/付款方式", "备注"]
WXPAY_HEADER = ["交易时间", "交易类型", "交易对方", "商品", "收/支", "金额(元)", "支付方式", "备注"]
JD_HEADER = ["交易时间", "商户名称", "交易说明", "金额", "收/付款方式", "收/支", "交易分类", "备注"]


def test_detects_alipay_at_nominal_offset() -> None:
    matrix = matrix_with_header(24, ALIPAY_HEADER, ["2024-03-01 10:00:00"])
    got = formats.detect_layout(matrix)
    assert got.layout == formats.ALIPAY
    assert got.header_row == 24
    assert got.confidence == pytest.approx(1.0)
    assert got.headers["备注"] == 7


def test_detects_alipay_with_extra_banner_row() -> None:
    matrix = matrix_with_header(25, ALIPAY_HEADER, ["2024-03-01 10:00:00"])
    got = formats.detect_layout(matrix)
    assert (got.layout, got.header_row) == (formats.ALIPAY, 25)


def test_detects_wxpay() -> None:
    matrix = matrix_with_header(16, WXPAY_HEADER)
    got = formats.detect_layout(matrix)
    assert got.layout == formats.WXPAY
    assert got.header_row == 16


def test_jd_maps_only_required_headers() -> None:
    matrix = matrix_with_header(21, JD_HEADER)
    got = formats.detect_layout(matrix)
    assert got.layout == formats.JD
    assert "备注" not in got.headers
    assert got.headers["商户名称"] == 1


def test_detects_wacai_from_first_rows() -> None:
    matrix = [["日期", "类型", "分类", "金额", "账户", "备注"], ["2024-03-01", "支出", "餐饮", "12", "现金", ""]]
    got = formats.detect_layout(matrix)
    assert got.layout == formats.WACAI
    assert got.header_row == 0
    assert got.confidence == pytest.approx(1.0)


def test_unknown_matrix_falls_back_to_custom_with_row0_headers() -> None:
    matrix = [["when", "amount", "merchant"], ["2024-03-01", "9.9", "x"]]
    got = formats.detect_layout(matrix)
    assert got.layout == formats.CUSTOM
    assert got.header_row == 0
    assert got.confidence == pytest.approx(0.5)
    assert got.headers == {"when": 0, "amount": 1, "merchant": 2}


def test_empty_matrix_is_custom() -> None:
    got = formats.detect_layout([])
    assert got.layout == formats.CUSTOM
    assert dict(got.headers) == {}


def test_partial_header_below_threshold_is_ignored() -> None:
    # 3 of 6 alipay headers → 0.5, below the 0.6 threshold.
    matrix = matrix_with_header(24, ["交易时间", "交易分类", "交易对方"])
    assert formats.detect_layout(matrix).layout == formats.CUSTOM


def test_read_csv_rows_handles_gbk_and_bom() -> None:
    text = "交易时间,金额\n2024-03-01,12.5\n"
    assert formats.read_csv_rows(text.encode("gb18030"))[1] == ["2024-03-01", "12.5"]
    assert formats.read_csv_rows(("\ufeff" + text).encode("utf-8"))[0] == ["交易时间", "金额"]


def test_read_rows_rejects_unknown_suffix(tmp_path: Path) -> None:
    p = tmp_path / "bill.pdf"
    p.write_bytes(b"%PDF")
    with pytest.raises(ValueError):
        formats.read_rows(p)


def test_read_rows_xlsx_first_sheet(tmp_path: Path) -> None:
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.append(["日期", "类型", "分类", "金额", "账户"])
    ws.append(["2024-03-01", "支出", "餐饮", 12.5, "现金"])
    p = tmp_path / "bill.xlsx"
    wb.save(p)

    rows = formats.read_rows(p)
    assert rows[0][:2] == ["日期", "类型"]
    assert rows[1][3] == 12.5
