"""Classification coordinator.

Stages run in a fixed order, each over the flows that no earlier stage
assigned a ledger to:

    rules → attribution → category ratio → profiles → model (book, category)

``mode`` selects which pass is wanted (ledger, category or both) and
``match_mode`` whether history, the model or both are consulted. The result
always carries every input flow; suggestions live on ``txn.meta.suggestion``
and persisting them is the caller's job.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from .dictionary import CategoryDictionary
from .ledger_detector import LedgerDetector
from .llm.client import LlmError
from .llm.orchestrator import LlmOrchestrator, LlmOutcome
from .logging_setup import get_logger
from .models import LlmBatchInfo, Transaction
from .profiles import ProfileBuilder
from .progress import ProgressSnapshot, ProgressStore, build_snapshot
from .repositories import Repositories
from .rules.bootstrap import RuleBootstrapper
from .rules.engine import RuleEngine
from .settings import LlmSettings, load_llm_settings
from .strategies import (
    AttributionStrategy,
    CategoryRatioStrategy,
    ProfileStrategy,
    RuleStrategy,
    Strategy,
    StrategyContext,
    run_strategy,
)

_PROGRESS_EVERY: int = 10

MSG_NO_FLOWS = "没有可处理的流水数据"
MSG_ALL_UNAVAILABLE = "规则引擎、账本画像和AI服务都暂时不可用，请检查网络连接或稍后重试"

_logger = get_logger("ledger_sense.pipeline")


class ClassifyMode(StrEnum):
    LEDGER_ONLY = "ledger-only"
    CATEGORY_ONLY = "category-only"
    BOTH = "both"


class MatchMode(StrEnum):
    HISTORY_FIRST = "history-first"
    HISTORY_ONLY = "history-only"
    MODEL_ONLY = "model-only"


@dataclass(slots=True)
class ClassifyRequest:
    user_id: int
    transactions: Sequence[Transaction]
    mode: ClassifyMode = ClassifyMode.BOTH
    match_mode: MatchMode = MatchMode.HISTORY_FIRST
    candidate_book_ids: Sequence[str] | None = None
    progress_token: str | None = None
    force_bootstrap: bool = False


@dataclass(slots=True)
class PipelineResult:
    success: bool
    transactions: list[Transaction]
    counters: dict[str, int] = field(default_factory=dict)
    message: str = ""
    progress: ProgressSnapshot | None = None

    @property
    def suggested(self) -> int:
        return self.counters.get("suggested", 0)


@dataclass(slots=True)
class _Tracker:
    """Running stage counters; mirrors them into the progress store when a token is set."""

    total: int
    store: ProgressStore | None
    token: str | None
    counts: dict[str, int] = field(
        default_factory=lambda: {"rules": 0, "attribution": 0, "category": 0, "profiles": 0}
    )
    llm_scope: int = 0
    llm_matched: int = 0
    llm_batch: LlmBatchInfo | None = None

    @property
    def history(self) -> int:
        return sum(self.counts.values())

    def snapshot(self) -> ProgressSnapshot:
        return build_snapshot(
            self.total,
            rules=self.counts["rules"],
            attribution=self.counts["attribution"],
            category=self.counts["category"],
            profiles=self.counts["profiles"],
            llm_scope=self.llm_scope,
            llm_matched=self.llm_matched,
            llm_batch=self.llm_batch,
        )

    def emit(self) -> None:
        if self.store is not None and self.token:
            self.store.set(self.token, self.snapshot())

    def on_batch(self, info: LlmBatchInfo) -> None:
        self.llm_batch = info
        self.emit()

    def clear(self) -> None:
        if self.store is not None and self.token:
            self.store.clear(self.token)

    def summary(self) -> str:
        c = self.counts
        return (
            f"规则引擎匹配 {c['rules']} 条，归属匹配 {c['attribution']} 条，"
            f"分类匹配 {c['category']} 条，账本画像匹配 {c['profiles']} 条"
        )

    def counters(self) -> dict[str, int]:
        return {
            "rule": self.counts["rules"],
            "attribution": self.counts["attribution"],
            "category_ratio": self.counts["category"],
            "profile": self.counts["profiles"],
            "llm": self.llm_matched,
            "history": self.history,
            "suggested": self.history + self.llm_matched,
            "total": self.total,
        }


class PipelineCoordinator:
    """Runs the staged classification over a batch of parsed flows."""

    def __init__(
        self,
        repos: Repositories,
        *,
        settings: LlmSettings | None = None,
        dictionary: CategoryDictionary | None = None,
        progress: ProgressStore | None = None,
        orchestrator: LlmOrchestrator | None = None,
    ) -> None:
        self._repos = repos
        self._settings = settings
        self._dictionary = dictionary
        self._progress = progress
        self._orchestrator = orchestrator
        self._builder = ProfileBuilder(repos.history, repos.profiles)
        self._engine = RuleEngine(repos.rules)
        self._bootstrapper = RuleBootstrapper(repos.rules, repos.history)

    def _llm(self) -> LlmOrchestrator:
        if self._orchestrator is None:
            settings = self._settings or load_llm_settings()
            self._orchestrator = LlmOrchestrator(settings, self._repos.books, self._repos.history)
        return self._orchestrator

    def _bootstrap(self, request: ClassifyRequest) -> None:
        try:
            result = self._bootstrapper.bootstrap(request.user_id, force=request.force_bootstrap)
        except Exception as e:  # noqa: BLE001
            _logger.warning("pipeline:bootstrap_failed user_id=%d error=%s", request.user_id, e)
            return
        _logger.info(
            "pipeline:bootstrap created=%d attempted=%d skipped=%s",
            result.created,
            result.attempted,
            result.skipped_reason,
        )

    def _context(self, request: ClassifyRequest) -> StrategyContext:
        history = self._repos.history
        return StrategyContext(
            user_id=request.user_id,
            books=self._repos.books.list_books(request.user_id, request.candidate_book_ids),
            history=history,
            builder=self._builder,
            rule_engine=self._engine,
            detector=LedgerDetector(
                self._builder, account_names=history.account_names(request.user_id)
            ),
            dictionary=self._dictionary,
            candidate_book_ids=request.candidate_book_ids,
        )

    def _run_stage(
        self,
        strategy: Strategy,
        flows: Sequence[Transaction],
        ctx: StrategyContext,
        tracker: _Tracker,
        *,
        skip_resolved: bool,
    ) -> None:
        for i, txn in enumerate(flows):
            if not (skip_resolved and txn.suggested_book_id):
                found = run_strategy(strategy, txn, ctx)
                if found is not None:
                    txn.suggestion().merge(found)
                    tracker.counts[strategy.name] += 1
            if (i + 1) % _PROGRESS_EVERY == 0 or i == len(flows) - 1:
                tracker.emit()
        _logger.info(
            "pipeline:stage_done stage=%s matched=%d total=%d",
            strategy.name,
            tracker.counts[strategy.name],
            tracker.total,
        )

    def _finish(
        self, flows: list[Transaction], tracker: _Tracker, message: str, *, success: bool = True
    ) -> PipelineResult:
        snapshot = tracker.snapshot()
        tracker.clear()
        _logger.info(
            "pipeline:done success=%s suggested=%d total=%d",
            success,
            tracker.history + tracker.llm_matched,
            tracker.total,
        )
        return PipelineResult(success, flows, tracker.counters(), message, snapshot)

    def run(self, request: ClassifyRequest) -> PipelineResult:
        """Classify ``request.transactions`` in place and report what each stage resolved."""

        mode = ClassifyMode(request.mode)
        match_mode = MatchMode(request.match_mode)
        flows = list(request.transactions)
        tracker = _Tracker(total=len(flows), store=self._progress, token=request.progress_token)
        if not flows:
            return PipelineResult(False, flows, tracker.counters(), MSG_NO_FLOWS, tracker.snapshot())

        try:
            return self._run(request, flows, mode, match_mode, tracker)
        except LlmError as e:
            _logger.error("pipeline:failed user_id=%d error=%s", request.user_id, e)
            tracker.clear()
            return PipelineResult(False, flows, tracker.counters(), str(e), tracker.snapshot())
        except Exception:
            tracker.clear()
            raise

    def _run(
        self,
        request: ClassifyRequest,
        flows: list[Transaction],
        mode: ClassifyMode,
        match_mode: MatchMode,
        tracker: _Tracker,
    ) -> PipelineResult:
        if mode == ClassifyMode.LEDGER_ONLY:
            cleared = 0
            for txn in flows:
                if txn.suggested_book_id:
                    txn.suggestion().clear_ledger()
                    cleared += 1
            if cleared:
                _logger.info("pipeline:ledger_cleared count=%d", cleared)

        self._bootstrap(request)
        tracker.emit()
        ctx = self._context(request)
        use_history = match_mode != MatchMode.MODEL_ONLY

        if use_history and mode != ClassifyMode.LEDGER_ONLY:
            self._run_stage(RuleStrategy(), flows, ctx, tracker, skip_resolved=False)

        if mode == ClassifyMode.CATEGORY_ONLY:
            if match_mode != MatchMode.MODEL_ONLY:
                return self._finish(
                    flows,
                    tracker,
                    f"规则引擎匹配 {tracker.counts['rules']} 条分类建议（仅分类模式，未执行账本/LLM）",
                )
            return self._model_categories(request, flows, tracker)

        if use_history:
            if mode != ClassifyMode.LEDGER_ONLY:
                self._run_stage(AttributionStrategy(), flows, ctx, tracker, skip_resolved=True)
            else:
                self._run_stage(CategoryRatioStrategy(), flows, ctx, tracker, skip_resolved=True)
            self._run_stage(ProfileStrategy(), flows, ctx, tracker, skip_resolved=False)

        if mode == ClassifyMode.LEDGER_ONLY and match_mode != MatchMode.MODEL_ONLY:
            return self._finish(
                flows,
                tracker,
                f"账本画像匹配 {tracker.counts['profiles']} 条，分类占比兜底匹配 "
                f"{tracker.counts['category']} 条（仅账本模式，未执行规则/LLM）",
            )

        pending = [t for t in flows if not t.suggested_book_id]
        if match_mode == MatchMode.HISTORY_ONLY:
            return self._finish(flows, tracker, f"历史匹配模式：{tracker.summary()}，已跳过 AI 分类")
        if not pending:
            return self._finish(flows, tracker, tracker.summary())

        tracker.llm_scope = len(pending)
        tracker.emit()
        llm = self._llm()
        if not llm.configured:
            return self._finish(
                flows, tracker, f"{tracker.summary()}（未配置AI服务，无法处理剩余 {len(pending)} 条）"
            )

        _logger.info("pipeline:llm_start pending=%d", len(pending))
        if mode == ClassifyMode.LEDGER_ONLY:
            outcome = llm.suggest_books_only(
                pending,
                request.user_id,
                candidate_book_ids=request.candidate_book_ids,
                on_batch=tracker.on_batch,
            )
        else:
            outcome = llm.apply_suggestions(
                pending,
                request.user_id,
                candidate_book_ids=request.candidate_book_ids,
                on_batch=tracker.on_batch,
            )
        return self._after_model(flows, tracker, outcome)

    def _model_categories(
        self, request: ClassifyRequest, flows: list[Transaction], tracker: _Tracker
    ) -> PipelineResult:
        tracker.llm_scope = len(flows)
        tracker.emit()
        llm = self._llm()
        if not llm.configured:
            return self._finish(
                flows, tracker, f"{tracker.summary()}（未配置AI服务，无法处理剩余 {len(flows)} 条）"
            )
        outcome = llm.suggest_categories_only(
            flows,
            request.user_id,
            candidate_book_ids=request.candidate_book_ids,
            on_batch=tracker.on_batch,
        )
        return self._after_model(flows, tracker, outcome)

    def _after_model(
        self, flows: list[Transaction], tracker: _Tracker, outcome: LlmOutcome
    ) -> PipelineResult:
        tracker.llm_matched = outcome.succeeded
        tracker.llm_batch = outcome.batch_info or tracker.llm_batch
        tracker.emit()

        succeeded = outcome.succeeded
        if tracker.history > 0:
            message = f"{tracker.summary()}，AI 补充 {succeeded} 条建议"
        elif succeeded == tracker.total:
            message = f"AI 返回 {succeeded} 条建议"
        else:
            message = f"AI 返回 {succeeded}/{tracker.total} 条建议（部分请求可能因网络问题失败）"

        if tracker.history + succeeded == 0:
            return self._finish(flows, tracker, MSG_ALL_UNAVAILABLE, success=False)
        return self._finish(flows, tracker, message)


def classify(
    repos: Repositories,
    transactions: Sequence[Transaction],
    *,
    user_id: int = 0,
    mode: ClassifyMode | str = ClassifyMode.BOTH,
    match_mode: MatchMode | str = MatchMode.HISTORY_FIRST,
    dictionary: CategoryDictionary | None = None,
    settings: LlmSettings | None = None,
) -> PipelineResult:
    """Convenience wrapper building a coordinator for a single request."""

    coordinator = PipelineCoordinator(repos, settings=settings, dictionary=dictionary)
    return coordinator.run(
        ClassifyRequest(
            user_id=user_id,
            transactions=transactions,
            mode=ClassifyMode(mode),
            match_mode=MatchMode(match_mode),
        )
    )
