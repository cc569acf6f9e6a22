"""Keyword extraction shared by profiling, ledger detection and rule learning.

Text is first stripped of transfer/loan template phrases and account noise
(bank-card names, tail numbers and the user's own account names), then split
on whitespace and punctuation. Chinese runs of two or more characters
(clipped to eight) and Latin/digit runs of two or more characters survive
unless they are stopwords.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence

_TEMPLATE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"(转账到|转账至|转至|转到|转入|转出)",
        r"(从.+?转账)",
        r"(借入给|借出给|借给|还款给)",
        r"(借入|借出|借贷|借款|还款|花呗|借呗|周周存钱)",
        r"(转账(到|至)?)[^\s，。；、]{0,30}",
        r"(从)[^\s，。；、]{0,30}(转账)",
        r"(转出|转入)[^\s，。；、]{0,30}",
    )
)
_ACCOUNT_NOISE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"[一-龥A-Za-z]*银行[^\s，。；、]{0,6}卡",
        r"(储蓄卡|信用卡|借记卡|贷记卡)",
        r"(尾号|末四位)[0-9Xx]{2,6}",
        r"(账号|账户|卡号)[0-9Xx]{4,}",
    )
)
_SPLIT_PUNCT_RE = re.compile(r"[（）()【】\[\]、，。！？；：,.!?;:]")
_CJK_RUN_RE = re.compile(r"[一-龥]+")
_LATIN_RUN_RE = re.compile(r"[A-Za-z0-9]{2,}")

_MAX_CJK_LEN: int = 8

STOP_WORDS: frozenset[str] = frozenset(
    {
        "支付",
        "转账",
        "成功",
        "已完成",
        "完成",
        "收款",
        "付款",
        "支出",
        "收入",
        "订单",
        "交易",
        "消费",
        "充值",
        "提现",
        "余额",
        "账户",
        "银行",
        "卡",
        "方式",
        "渠道",
        "平台",
        "系统",
        "服务",
        "公司",
        "有限公司",
        "股份",
        "的",
        "了",
        "是",
        "在",
        "有",
        "和",
        "与",
        "及",
        "或",
        "等",
    }
)


def sanitize(text: str, account_names: Sequence[str] = ()) -> str:
    """Remove template phrases, account noise and the given account names."""

    out = text or ""
    for pat in _TEMPLATE_PATTERNS:
        out = pat.sub(" ", out)
    for pat in _ACCOUNT_NOISE_PATTERNS:
        out = pat.sub(" ", out)
    for name in sorted({n.strip() for n in account_names if n and n.strip()}, key=len, reverse=True):
        out = re.sub(re.escape(name), " ", out, flags=re.IGNORECASE)
    return out


def extract_keywords(text: str, account_names: Sequence[str] = ()) -> list[str]:
    """Return unique keywords of ``text`` in first-seen order."""

    cleaned = _SPLIT_PUNCT_RE.sub(" ", sanitize(text, account_names))
    seen: dict[str, None] = {}
    for token in cleaned.split():
        for run in _CJK_RUN_RE.findall(token):
            if len(run) >= 2:
                word = run[:_MAX_CJK_LEN]
                if word not in STOP_WORDS:
                    seen.setdefault(word, None)
        for run in _LATIN_RUN_RE.findall(token):
            if run not in STOP_WORDS:
                seen.setdefault(run, None)
    return list(seen)


def extract_from_fields(fields: Iterable[str], account_names: Sequence[str] = ()) -> list[str]:
    seen: dict[str, None] = {}
    for text in fields:
        if text:
            for word in extract_keywords(text, account_names):
                seen.setdefault(word, None)
    return list(seen)


def top_n(counts: Mapping[str, int], n: int) -> dict[str, int]:
    """Keep the ``n`` highest counts; ties are broken by key for stable output."""

    ranked = sorted(((k, v) for k, v in counts.items() if v > 0), key=lambda kv: (-kv[1], kv[0]))
    return dict(ranked[:n])


def merge_counts(base: Mapping[str, int], extra: Counter[str] | Mapping[str, int]) -> dict[str, int]:
    merged = Counter(dict(base))
    merged.update(dict(extra))
    return dict(merged)
