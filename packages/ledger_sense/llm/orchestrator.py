"""Two-phase model fallback: ledger selection, then category selection.

Flows are processed in fixed-size batches in their original order, one
request at a time. A failing batch is logged, counted in
:class:`~ledger_sense.models.BatchStats` and skipped; later batches still
run. In the category phase each batch is split by suggested ledger and flows
whose current category already matches that ledger's vocabulary are resolved
locally (their memos are simplified with one cheaper request).
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from ..logging_setup import get_logger
from ..models import (
    BatchStats,
    Book,
    BookReply,
    BookSummary,
    CategoryReply,
    LlmBatchInfo,
    Transaction,
)
from ..repositories import BookRepository, HistoryRepository
from ..settings import LlmSettings
from . import client, prompting

STAGE_BOOK = "book"
STAGE_CATEGORY = "category"
SOURCE_LLM = "llm"

_CONF_EXACT: float = 0.95
_CONF_CONTAINS: float = 0.85
_CONF_PARENT: float = 0.80

type BatchCallback = Callable[[LlmBatchInfo], None]

_logger = get_logger("ledger_sense.llm.orchestrator")


@dataclass(frozen=True, slots=True)
class LlmOutcome:
    """Summary of one orchestrator call.

    ``succeeded`` counts flows that received any suggestion from the model
    (or from the local category match).
    """

    applied: bool
    total: int
    succeeded: int
    batch_info: LlmBatchInfo | None = None


_EMPTY = LlmOutcome(applied=False, total=0, succeeded=0)


def build_llm_batch_info(stage: str, stats: BatchStats) -> LlmBatchInfo | None:
    if stats.total_batches == 0:
        return None
    return LlmBatchInfo(stage=stage, stats=stats.snapshot())


def _norm(text: str) -> str:
    return "".join(text.split()).lower()


def _category_reply(
    txn: Transaction, book: BookSummary, industry: str, primary: str, secondary: str | None, conf: float
) -> CategoryReply:
    return CategoryReply(
        index=0,
        flow_type=txn.flow_type or (book.flow_types[0] if book.flow_types else None),
        industry_type=industry,
        primary_category=primary,
        secondary_category=secondary,
        description=txn.description or None,
        confidence=conf,
    )


def fuzzy_match_category(txn: Transaction, book: BookSummary) -> CategoryReply | None:
    """Match the flow's current category against a ledger's known categories.

    Exact (whitespace/case-insensitive) → 0.95, containment either way → 0.85,
    ``primary/secondary`` whose primary is a known primary → 0.80.
    """

    current = (txn.industry_type or "").strip()
    if not current:
        return None
    needle = _norm(current)
    known = (*book.primary_categories, *book.secondary_categories)

    for category in known:
        if _norm(category) == needle:
            primary, _, secondary = category.partition("/")
            return _category_reply(txn, book, category, primary, secondary or None, _CONF_EXACT)

    for category in known:
        norm = _norm(category)
        if norm and (norm in needle or needle in norm):
            primary, _, secondary = category.partition("/")
            return _category_reply(txn, book, category, primary, secondary or None, _CONF_CONTAINS)

    if "/" in current:
        head, _, tail = current.partition("/")
        head_norm = _norm(head)
        for category in book.primary_categories:
            if _norm(category) == head_norm:
                return _category_reply(
                    txn, book, current, category, tail.strip() or None, _CONF_PARENT
                )
    return None


def build_book_summaries(
    books: Sequence[Book], history: HistoryRepository, user_id: int
) -> list[BookSummary]:
    """Attach each ledger's observed flow types and category vocabulary."""

    summaries: list[BookSummary] = []
    for book in books:
        rows = history.transactions(user_id, book_id=book.book_id)
        flow_types = tuple(dict.fromkeys(t.flow_type for t in rows if t.flow_type))
        categories = tuple(dict.fromkeys(t.industry_type for t in rows if t.industry_type))
        summaries.append(
            BookSummary(
                book_id=book.book_id,
                book_name=book.name,
                description=book.description,
                flow_types=flow_types,
                primary_categories=tuple(c for c in categories if "/" not in c),
                secondary_categories=tuple(c for c in categories if "/" in c),
            )
        )
    return summaries


class LlmOrchestrator:
    def __init__(
        self,
        settings: LlmSettings,
        books: BookRepository,
        history: HistoryRepository,
    ) -> None:
        self._settings = settings
        self._books = books
        self._history = history

    @property
    def configured(self) -> bool:
        return self._settings.configured

    def _summaries(self, user_id: int, candidate_book_ids: Sequence[str] | None) -> list[BookSummary]:
        books = self._books.list_books(user_id, candidate_book_ids)
        summaries = build_book_summaries(books, self._history, user_id)
        _logger.info(
            "llm:books user_id=%d count=%d model=%s batch_size=%d",
            user_id,
            len(summaries),
            self._settings.model,
            self._settings.batch_size,
        )
        return summaries

    # ---- phases ----------------------------------------------------------

    def _suggest_books(
        self,
        flows: Sequence[Transaction],
        books: Sequence[BookSummary],
        on_batch: BatchCallback | None,
    ) -> tuple[list[BookReply | None], BatchStats]:
        size = self._settings.batch_size
        stats = BatchStats(batch_size=size, total_batches=math.ceil(len(flows) / size))
        results: list[BookReply | None] = [None] * len(flows)
        known_ids = {b.book_id for b in books}
        rejected = 0

        for start in range(0, len(flows), size):
            chunk = flows[start : start + size]
            batch_no = start // size + 1
            stats.last_batch_size = len(chunk)
            try:
                replies = client.request_books(self._settings, prompting.build_book_prompt(chunk, books))
            except Exception as e:  # noqa: BLE001
                stats.failed_batches += 1
                _logger.error(
                    "llm:batch_failed stage=%s batch=%d/%d error=%s",
                    STAGE_BOOK,
                    batch_no,
                    stats.total_batches,
                    e,
                )
            else:
                for reply in replies:
                    if not 0 <= reply.index < len(chunk):
                        continue
                    if reply.book_id not in known_ids:
                        rejected += 1
                        _logger.warning(
                            "llm:book_rejected batch=%d index=%d book_id=%s",
                            batch_no,
                            reply.index,
                            reply.book_id,
                        )
                        continue
                    results[start + reply.index] = reply
                stats.completed_batches += 1
            if on_batch is not None:
                on_batch(LlmBatchInfo(STAGE_BOOK, stats.snapshot()))

        _logger.info(
            "llm:phase_done stage=%s resolved=%d rejected=%d failed_batches=%d",
            STAGE_BOOK,
            sum(1 for r in results if r is not None),
            rejected,
            stats.failed_batches,
        )
        return results, stats

    def _simplify_memos(
        self, matched: list[tuple[int, CategoryReply]], flows: Sequence[Transaction]
    ) -> list[tuple[int, CategoryReply]]:
        try:
            replies = client.request_memos(
                self._settings, prompting.build_memo_prompt([flows[i] for i, _ in matched])
            )
        except Exception as e:  # noqa: BLE001
            _logger.warning("llm:memo_failed count=%d error=%s", len(matched), e)
            return matched
        out = list(matched)
        for reply in replies:
            if 0 <= reply.index < len(out) and reply.description:
                idx, found = out[reply.index]
                out[reply.index] = (idx, found.model_copy(update={"description": reply.description}))
        return out

    def _suggest_categories(
        self,
        flows: Sequence[Transaction],
        books: Sequence[BookSummary],
        book_ids: Sequence[str | None],
        on_batch: BatchCallback | None,
    ) -> tuple[list[CategoryReply | None], BatchStats]:
        size = self._settings.batch_size
        stats = BatchStats(batch_size=size, total_batches=math.ceil(len(flows) / size))
        results: list[CategoryReply | None] = [None] * len(flows)
        by_id = {b.book_id: b for b in books}

        for start in range(0, len(flows), size):
            end = min(start + size, len(flows))
            stats.last_batch_size = end - start
            chunk_failed = False

            groups: dict[str | None, list[int]] = {}
            for i in range(start, end):
                book_id = book_ids[i]
                groups.setdefault(book_id if book_id in by_id else None, []).append(i)

            for book_id, indices in groups.items():
                book = by_id.get(book_id) if book_id else None
                pending: list[int] = []
                matched: list[tuple[int, CategoryReply]] = []
                for i in indices:
                    found = fuzzy_match_category(flows[i], book) if book is not None else None
                    if found is None:
                        pending.append(i)
                    else:
                        matched.append((i, found))

                if matched:
                    for i, found in self._simplify_memos(matched, flows):
                        results[i] = found

                if not pending:
                    continue
                prompt = prompting.build_category_prompt([flows[i] for i in pending], book)
                try:
                    replies = client.request_categories(self._settings, prompt)
                except Exception as e:  # noqa: BLE001
                    stats.failed_batches += 1
                    chunk_failed = True
                    _logger.error(
                        "llm:batch_failed stage=%s batch=%d/%d book=%s error=%s",
                        STAGE_CATEGORY,
                        start // size + 1,
                        stats.total_batches,
                        book.book_name if book else prompting.UNKNOWN_BOOK,
                        e,
                    )
                    continue
                for reply in replies:
                    if 0 <= reply.index < len(pending):
                        results[pending[reply.index]] = reply

            if not chunk_failed:
                stats.completed_batches += 1
            if on_batch is not None:
                on_batch(LlmBatchInfo(STAGE_CATEGORY, stats.snapshot()))

        _logger.info(
            "llm:phase_done stage=%s resolved=%d failed_batches=%d",
            STAGE_CATEGORY,
            sum(1 for r in results if r is not None),
            stats.failed_batches,
        )
        return results, stats

    # ---- applying replies ------------------------------------------------

    @staticmethod
    def _book_name(books: Sequence[BookSummary], book_id: str) -> str:
        for b in books:
            if b.book_id == book_id:
                return b.book_name
        return book_id

    @staticmethod
    def _apply_category(txn: Transaction, reply: CategoryReply) -> None:
        s = txn.suggestion()
        for name in (
            "flow_type",
            "industry_type",
            "primary_category",
            "secondary_category",
            "description",
            "comment",
        ):
            value = getattr(reply, name)
            if value:
                setattr(s, name, value)
        if reply.confidence is not None:
            s.confidence = reply.confidence
        s.source = SOURCE_LLM
        if reply.description:
            txn.description = reply.description

    def _apply_book(self, txn: Transaction, reply: BookReply, books: Sequence[BookSummary]) -> None:
        s = txn.suggestion()
        s.book_id = reply.book_id
        s.book_name = self._book_name(books, reply.book_id)
        if reply.confidence is not None:
            s.confidence = reply.confidence
        s.source = SOURCE_LLM

    # ---- public ----------------------------------------------------------

    def apply_suggestions(
        self,
        flows: Sequence[Transaction],
        user_id: int,
        *,
        candidate_book_ids: Sequence[str] | None = None,
        on_batch: BatchCallback | None = None,
    ) -> LlmOutcome:
        """Run both phases and merge the replies into each flow's suggestion."""

        if not self.configured or not flows:
            return _EMPTY
        books = self._summaries(user_id, candidate_book_ids)
        book_replies, book_stats = self._suggest_books(flows, books, on_batch)
        book_ids = [r.book_id if r is not None else None for r in book_replies]
        cat_replies, cat_stats = self._suggest_categories(flows, books, book_ids, on_batch)

        succeeded = 0
        for txn, book_reply, cat_reply in zip(flows, book_replies, cat_replies, strict=True):
            if book_reply is None and cat_reply is None:
                continue
            if book_reply is not None:
                self._apply_book(txn, book_reply, books)
            if cat_reply is not None:
                self._apply_category(txn, cat_reply)
            succeeded += 1

        info = build_llm_batch_info(STAGE_CATEGORY, cat_stats) or build_llm_batch_info(
            STAGE_BOOK, book_stats
        )
        _logger.info("llm:done total=%d succeeded=%d", len(flows), succeeded)
        return LlmOutcome(succeeded > 0, len(flows), succeeded, info)

    def suggest_books_only(
        self,
        flows: Sequence[Transaction],
        user_id: int,
        *,
        candidate_book_ids: Sequence[str] | None = None,
        on_batch: BatchCallback | None = None,
    ) -> LlmOutcome:
        if not self.configured or not flows:
            return _EMPTY
        books = self._summaries(user_id, candidate_book_ids)
        replies, stats = self._suggest_books(flows, books, on_batch)
        succeeded = 0
        for txn, reply in zip(flows, replies, strict=True):
            if reply is None:
                continue
            self._apply_book(txn, reply, books)
            succeeded += 1
        return LlmOutcome(succeeded > 0, len(flows), succeeded, build_llm_batch_info(STAGE_BOOK, stats))

    def suggest_categories_only(
        self,
        flows: Sequence[Transaction],
        user_id: int,
        *,
        candidate_book_ids: Sequence[str] | None = None,
        on_batch: BatchCallback | None = None,
    ) -> LlmOutcome:
        """Category phase only, using ledgers already suggested (or committed) per flow."""

        if not self.configured or not flows:
            return _EMPTY
        books = self._summaries(user_id, candidate_book_ids)
        book_ids = [t.suggested_book_id or t.book_id for t in flows]
        replies, stats = self._suggest_categories(flows, books, book_ids, on_batch)
        succeeded = 0
        for txn, reply in zip(flows, replies, strict=True):
            if reply is None:
                continue
            self._apply_category(txn, reply)
            succeeded += 1
        return LlmOutcome(
            succeeded > 0, len(flows), succeeded, build_llm_batch_info(STAGE_CATEGORY, stats)
        )
