"""Profile-based ledger scoring.

Each candidate ledger with a non-empty profile is scored on four independent
signals in ``[0, 1]`` (merchant, keyword set, amount bucket, pay type), which
are blended with fixed weights. Confidence mixes the blended score with the
profile's data volume and is clamped to ``[0.3, 0.95]``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from .keywords import extract_from_fields
from .logging_setup import get_logger
from .models import Book, LedgerMatch, LedgerProfile, Transaction, amount_bucket
from .profiles import ProfileBuilder

WEIGHTS: Mapping[str, float] = {
    "merchant": 0.35,
    "keyword": 0.45,
    "amount": 0.10,
    "pay_type": 0.10,
}
DEFAULT_MAX_RESULTS: int = 5
_VOLUME_SATURATION: int = 100
_CONF_MIN: float = 0.3
_CONF_MAX: float = 0.95

_logger = get_logger("ledger_sense.ledger_detector")


def merchant_score(name: str, profile: LedgerProfile) -> float:
    """Best containment score of the merchant name against profile keywords."""

    needle = (name or "").strip().lower()
    if not needle or not profile.keywords:
        return 0.0
    max_weight = max(profile.keywords.values())
    best = 0.0
    for keyword, count in profile.keywords.items():
        kw = keyword.lower()
        if not kw:
            continue
        if kw == needle:
            return 1.0
        nw = count / max_weight
        if kw in needle:
            best = max(best, min(0.95, nw * (0.7 + len(kw) / len(needle) * 0.3)))
        elif needle in kw:
            best = max(best, min(0.9, nw * (0.6 + len(needle) / len(kw) * 0.3)))
    return best


def keyword_components(keywords: Sequence[str], profile: LedgerProfile) -> tuple[float, float]:
    """Return ``(weight_component, count_component)`` of the keyword signal.

    The weight component compares the summed profile counts of matched keywords
    with the profile's maximum count; the count component rewards how many
    distinct keywords matched.
    """

    if not keywords or not profile.keywords:
        return 0.0, 0.0
    matched = [profile.keywords[k] for k in keywords if k in profile.keywords]
    if not matched:
        return 0.0, 0.0
    max_weight = max(profile.keywords.values())
    weight = min(1.0, sum(matched) / max_weight)
    count = min(1.0, 0.3 + len(matched) / 5 * 0.7)
    return weight, count


def amount_score(txn: Transaction, profile: LedgerProfile) -> float:
    total = sum(profile.amount_distribution.values())
    if total <= 0:
        return 0.0
    ratio = profile.amount_distribution.get(amount_bucket(txn.money), 0) / total
    if ratio >= 0.3:
        return min(0.8, ratio * 1.5)
    return min(0.5, ratio * 2)


def pay_type_score(pay_type: str, profile: LedgerProfile) -> float:
    total = sum(profile.pay_type_stats.values())
    if not pay_type or total <= 0:
        return 0.0
    needle = pay_type.lower()
    hits = sum(c for p, c in profile.pay_type_stats.items() if p.lower() == needle)
    ratio = hits / total
    if ratio >= 0.3:
        return 1.0
    return min(1.0, ratio * 2)


def transaction_signal_keywords(txn: Transaction, account_names: Sequence[str] = ()) -> list[str]:
    return extract_from_fields(
        (txn.name, txn.description, txn.goods, txn.account_name, txn.attribution), account_names
    )


def score_ledger(
    txn: Transaction, book: Book, profile: LedgerProfile, keywords: Sequence[str]
) -> LedgerMatch:
    merchant = merchant_score(txn.name, profile)
    kw_weight, kw_count = keyword_components(keywords, profile)
    keyword = 0.6 * kw_weight + 0.4 * kw_count if kw_weight or kw_count else 0.0
    amount = amount_score(txn, profile)
    pay = pay_type_score(txn.pay_type, profile)

    score = round(
        merchant * WEIGHTS["merchant"]
        + keyword * WEIGHTS["keyword"]
        + amount * WEIGHTS["amount"]
        + pay * WEIGHTS["pay_type"],
        2,
    )
    volume = min(profile.total_flows / _VOLUME_SATURATION, 1.0)
    confidence = min(_CONF_MAX, max(_CONF_MIN, score * 0.7 + volume * 0.3))
    return LedgerMatch(
        book_id=book.book_id,
        book_name=book.name,
        score=score,
        confidence=round(confidence, 4),
        factors={
            "merchant": round(merchant, 4),
            "keyword": round(keyword, 4),
            "keyword_weight": round(kw_weight, 4),
            "keyword_count": round(kw_count, 4),
            "amount": round(amount, 4),
            "pay_type": round(pay, 4),
        },
    )


class LedgerDetector:
    """Ranks a user's ledgers for a transaction using stored profiles."""

    def __init__(self, builder: ProfileBuilder, *, account_names: Sequence[str] = ()) -> None:
        self._builder = builder
        self._account_names = tuple(account_names)

    def detect(
        self,
        txn: Transaction,
        user_id: int,
        books: Sequence[Book],
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> list[LedgerMatch]:
        """Return positive-score ledgers, best first, at most ``max_results``."""

        try:
            keywords = transaction_signal_keywords(txn, self._account_names)
            matches: list[LedgerMatch] = []
            for book in books:
                profile = self._builder.get_or_build(user_id, book.book_id)
                if profile.total_flows == 0:
                    continue
                found = score_ledger(txn, book, profile, keywords)
                if found.score > 0:
                    matches.append(found)
            matches.sort(key=lambda m: m.score, reverse=True)
            return matches[:max_results]
        except Exception as e:  # noqa: BLE001
            _logger.warning("ledger_detector:failed user_id=%d error=%s", user_id, e)
            return []
