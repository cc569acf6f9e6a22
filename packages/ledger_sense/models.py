"""Data models shared across the import-classification pipeline.

Transactions are mutable records: the special-pattern resolver tags them and
the coordinator threads an evolving :class:`Suggestion` through their
metadata. Everything the model returns is validated through the pydantic
reply models at the bottom of this module before it touches a transaction.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Flow directions
# ---------------------------------------------------------------------------

EXPENSE = "支出"
INCOME = "收入"
NOT_COUNTED = "不计收支"
TRANSFER = "转账"


# ---------------------------------------------------------------------------
# Suggestion and transaction
# ---------------------------------------------------------------------------

# Fields that describe *why* a suggestion exists. The most recent contributing
# stage owns them; every other field is fill-only.
_EXPLANATION_FIELDS = frozenset({"confidence", "comment", "source"})


@dataclass(slots=True)
class Suggestion:
    """Candidate classification attached to a transaction.

    ``industry_type`` is the combined ``primary[/secondary]`` category string.
    ``rule_id`` is only set when the rule engine produced the category.
    """

    book_id: str | None = None
    book_name: str | None = None
    flow_type: str | None = None
    industry_type: str | None = None
    primary_category: str | None = None
    secondary_category: str | None = None
    attribution: str | None = None
    description: str | None = None
    confidence: float | None = None
    comment: str | None = None
    rule_id: int | None = None
    source: str | None = None

    def merge(self, other: Suggestion) -> None:
        """Fold ``other`` into this suggestion without downgrading set fields."""

        for f in fields(self):
            incoming = getattr(other, f.name)
            if incoming is None or incoming == "":
                continue
            current = getattr(self, f.name)
            if f.name in _EXPLANATION_FIELDS or current is None or current == "":
                setattr(self, f.name, incoming)

    def clear_ledger(self) -> None:
        self.book_id = None
        self.book_name = None

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(slots=True)
class TransactionMeta:
    """Mutable metadata bag carried by every parsed transaction."""

    original_row: tuple[Any, ...] = ()
    headers: dict[str, int] = field(default_factory=dict)
    source_file: str | None = None
    layout: str | None = None
    row_index: int | None = None
    is_refund: bool = False
    is_family: bool = False
    pair_id: str | None = None
    badge: str | None = None
    badge_type: str | None = None
    selected: bool = True
    related: tuple[Transaction, ...] = ()
    merged_money: Decimal | None = None
    suggestion: Suggestion | None = None


@dataclass(slots=True)
class Transaction:
    """A normalized transaction row.

    ``money`` is always positive; direction lives in ``flow_type``.
    ``book_id`` is only set for historical (committed) transactions or when a
    caller pre-assigns a ledger.
    """

    day: str
    flow_type: str
    money: Decimal
    name: str = ""
    description: str = ""
    industry_type: str = ""
    pay_type: str = ""
    goods: str = ""
    account_name: str = ""
    attribution: str = ""
    book_id: str | None = None
    meta: TransactionMeta = field(default_factory=TransactionMeta)

    def raw(self, column: str) -> str:
        """Return the original cell for ``column`` as stripped text (or ``""``)."""

        idx = self.meta.headers.get(column)
        if idx is None or idx >= len(self.meta.original_row):
            return ""
        value = self.meta.original_row[idx]
        if value is None:
            return ""
        return str(value).strip()

    def suggestion(self) -> Suggestion:
        """Return the attached suggestion, creating an empty one on first use."""

        if self.meta.suggestion is None:
            self.meta.suggestion = Suggestion()
        return self.meta.suggestion

    @property
    def suggested_book_id(self) -> str | None:
        s = self.meta.suggestion
        return s.book_id if s is not None else None


# ---------------------------------------------------------------------------
# Ledgers, profiles, rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Book:
    book_id: str
    name: str
    description: str | None = None
    user_id: int = 0


@dataclass(frozen=True, slots=True)
class BookSummary:
    """A ledger plus the category vocabulary observed in its history."""

    book_id: str
    book_name: str
    description: str | None
    flow_types: tuple[str, ...] = ()
    primary_categories: tuple[str, ...] = ()
    secondary_categories: tuple[str, ...] = ()


AMOUNT_BUCKETS: tuple[tuple[str, Decimal, Decimal | None], ...] = (
    ("0-50", Decimal(0), Decimal(50)),
    ("50-200", Decimal(50), Decimal(200)),
    ("200-500", Decimal(200), Decimal(500)),
    ("500-1000", Decimal(500), Decimal(1000)),
    ("1000+", Decimal(1000), None),
)


def amount_bucket(money: Decimal) -> str:
    """Return the half-open bucket label for ``money``."""

    for label, low, high in AMOUNT_BUCKETS:
        if money >= low and (high is None or money < high):
            return label
    return AMOUNT_BUCKETS[0][0]


@dataclass(slots=True)
class LedgerProfile:
    """Statistical fingerprint of one ledger's committed history.

    ``category_weights``, ``keywords`` and ``pay_type_stats`` are the top-N
    views used for matching. The ``*_counts`` maps hold the untruncated
    tallies that incremental updates accumulate into.
    """

    book_id: str
    category_weights: dict[str, int] = field(default_factory=dict)
    keywords: dict[str, int] = field(default_factory=dict)
    pay_type_stats: dict[str, int] = field(default_factory=dict)
    amount_distribution: dict[str, int] = field(default_factory=dict)
    total_flows: int = 0
    updated_at: datetime | None = None
    category_counts: dict[str, int] = field(default_factory=dict)
    keyword_counts: dict[str, int] = field(default_factory=dict)
    pay_type_counts: dict[str, int] = field(default_factory=dict)


class RuleType(StrEnum):
    MERCHANT_KEYWORD = "merchant_keyword"
    DESCRIPTION_KEYWORD = "description_keyword"
    AMOUNT_RANGE = "amount_range"
    PAY_TYPE = "pay_type"
    COMBINED = "combined"


class RuleSource(StrEnum):
    USER = "user"
    LEARNED = "learned"


@dataclass(frozen=True, slots=True)
class RuleConditions:
    """Condition payload of a rule.

    Single-kind rules only consult the fields belonging to their kind; a
    combined rule requires every populated field to hold.
    """

    merchant_keywords: tuple[str, ...] = ()
    description_keywords: tuple[str, ...] = ()
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    pay_types: tuple[str, ...] = ()

    @property
    def has_amount(self) -> bool:
        return self.min_amount is not None or self.max_amount is not None


@dataclass(slots=True)
class MatchingRule:
    user_id: int
    name: str
    rule_type: RuleType
    conditions: RuleConditions
    target_book_id: str
    target_category: str | None = None
    target_flow_type: str | None = None
    priority: int = 50
    enabled: bool = True
    hit_count: int = 0
    source: RuleSource = RuleSource.USER
    id: int | None = None


@dataclass(frozen=True, slots=True)
class Correction:
    """A user's fix of one transaction, the input to rule learning."""

    user_id: int
    transaction: Transaction
    target_book_id: str
    target_category: str | None = None
    target_flow_type: str | None = None


# ---------------------------------------------------------------------------
# Results of individual components
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LayoutDetection:
    layout: str
    header_row: int
    headers: Mapping[str, int]
    confidence: float


class ParseIssue(NamedTuple):
    row_index: int
    message: str


@dataclass(slots=True)
class ParseResult:
    detection: LayoutDetection
    transactions: list[Transaction] = field(default_factory=list)
    issues: list[ParseIssue] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class PairedTransaction:
    """A resolved pair. ``merged`` is only set for partial refunds and family pairs."""

    pair_id: str
    kind: str
    members: tuple[Transaction, ...]
    merged: Transaction | None = None


@dataclass(slots=True)
class SpecialPatternResult:
    display: list[Transaction]
    pairs: list[PairedTransaction]
    stats: dict[str, int]


class DictionaryMatch(NamedTuple):
    category: str
    pattern: str
    confidence: float
    matched_field: str


class RuleMatch(NamedTuple):
    rule: MatchingRule
    confidence: float
    specificity: int


@dataclass(frozen=True, slots=True)
class LedgerMatch:
    book_id: str
    book_name: str
    score: float
    confidence: float
    factors: Mapping[str, float]


@dataclass(frozen=True, slots=True)
class LearnResult:
    success: bool
    rule_id: int | None
    rule_type: RuleType | None
    message: str


@dataclass(frozen=True, slots=True)
class BootstrapResult:
    created: int
    attempted: int
    skipped_reason: str | None = None


@dataclass(slots=True)
class BatchStats:
    batch_size: int
    total_batches: int = 0
    completed_batches: int = 0
    failed_batches: int = 0
    last_batch_size: int = 0

    def snapshot(self) -> BatchStats:
        return BatchStats(
            batch_size=self.batch_size,
            total_batches=self.total_batches,
            completed_batches=self.completed_batches,
            failed_batches=self.failed_batches,
            last_batch_size=self.last_batch_size,
        )


@dataclass(frozen=True, slots=True)
class LlmBatchInfo:
    stage: str
    stats: BatchStats


# ---------------------------------------------------------------------------
# Model replies
# ---------------------------------------------------------------------------


def _coerce_confidence(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        fv = float(v)
    except (TypeError, ValueError):
        return None
    return min(1.0, max(0.0, fv))


class BookReply(BaseModel):
    """One element of the ledger-selection reply array."""

    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    index: int
    book_id: str | None = None
    confidence: float | None = None

    @field_validator("book_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float | None:
        return _coerce_confidence(v)


class CategoryReply(BaseModel):
    """One element of the category-selection reply array."""

    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    index: int
    flow_type: str | None = None
    primary_category: str | None = None
    secondary_category: str | None = None
    industry_type: str | None = None
    description: str | None = None
    confidence: float | None = None
    comment: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float | None:
        return _coerce_confidence(v)

    @field_validator(
        "flow_type",
        "primary_category",
        "secondary_category",
        "industry_type",
        "description",
        "comment",
        mode="before",
    )
    @classmethod
    def _text_or_none(cls, v: Any) -> str | None:
        if v is None:
            return None
        s = str(v).strip()
        return s or None


class MemoReply(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    index: int
    description: str = ""

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)
