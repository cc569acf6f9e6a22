# ruff: noqa: E402, I001
import sys
from pathlib import Path

import pytest


_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

from ledger_sense.llm import client as client_module  # noqa: E402
from ledger_sense.llm import prompting  # noqa: E402
from ledger_sense.llm.orchestrator import (  # noqa: E402
    STAGE_BOOK,
    STAGE_CATEGORY,
    LlmOrchestrator,
    build_book_summaries,
    fuzzy_match_category,
)
from ledger_sense.models import Book, BookSummary  # noqa: E402
from ledger_sense.settings import LlmSettings  # noqa: E402
from tests.helpers.factories import repos, txn  # noqa: E402
from tests.helpers.openai_stub import (  # noqa: E402
    OpenAIStub,
    as_json,
    connection_error,
    flow_count,
    flow_field,
    system_content,
    timeout_error,
    user_content,
)

BOOKS = [Book("daily", "日常", "吃喝与通勤"), Book("travel", "旅行")]
HISTORY = [
    txn("星巴克", "30", book_id="daily", industry_type="餐饮/咖啡"),
    txn("滴滴", "20", book_id="daily", industry_type="交通"),
    txn("携程", "800", book_id="travel", industry_type="旅行/机票"),
]


def _settings(**kw) -> LlmSettings:
    return LlmSettings(base_url=kw.pop("base_url", "http://llm.test/"), api_key="k", **kw)


def _book_reply(kwargs, book_id="daily"):
    return as_json([{"index": i, "bookId": book_id, "confidence": 0.9} for i in range(flow_count(kwargs))])


def _category_reply(kwargs):
    return as_json(
        [
            {
                "index": i,
                "flowType": "支出",
                "primaryCategory": "餐饮",
                "secondaryCategory": "咖啡",
                "description": f"简化-{name}",
                "confidence": 0.88,
            }
            for i, name in enumerate(flow_field(kwargs, "交易对象"))
        ]
    )


def _memo_reply(kwargs):
    return as_json([{"index": i, "description": "简化备注"} for i in range(flow_count(kwargs))])


def _router(book=_book_reply, category=_category_reply, memo=_memo_reply):
    def reply(kwargs):
        system = system_content(kwargs)
        if system == prompting.BOOK_SYSTEM_PROMPT:
            return book(kwargs)
        if system == prompting.CATEGORY_SYSTEM_PROMPT:
            return category(kwargs)
        return memo(kwargs)

    return reply


def _orchestrator(monkeypatch, reply, **settings):
    stub = OpenAIStub(reply)
    monkeypatch.setattr(client_module, "OpenAI", stub.client_class)
    r = repos(books=BOOKS, history=HISTORY)
    return LlmOrchestrator(_settings(**settings), r.books, r.history), stub


def test_apply_suggestions_runs_both_phases_in_batches(monkeypatch) -> None:
    orch, stub = _orchestrator(monkeypatch, _router(), batch_size=2)
    flows = [txn("瑞幸"), txn("Manner"), txn("Seesaw")]
    batches = []

    outcome = orch.apply_suggestions(flows, 0, on_batch=batches.append)

    assert outcome.applied
    assert (outcome.total, outcome.succeeded) == (3, 3)
    assert [flow_count(c) for c in stub.calls_for(prompting.BOOK_SYSTEM_PROMPT)] == [2, 1]
    assert len(stub.calls_for(prompting.CATEGORY_SYSTEM_PROMPT)) == 2
    s = flows[0].suggestion()
    assert (s.book_id, s.book_name) == ("daily", "日常")
    assert s.industry_type == "餐饮/咖啡"
    assert s.confidence == pytest.approx(0.88)
    assert s.source == "llm"
    assert flows[0].description == "简化-瑞幸"
    assert outcome.batch_info.stage == STAGE_CATEGORY
    assert outcome.batch_info.stats.completed_batches == 2
    assert [b.stage for b in batches] == [STAGE_BOOK, STAGE_BOOK, STAGE_CATEGORY, STAGE_CATEGORY]


def test_client_is_built_from_settings(monkeypatch) -> None:
    orch, stub = _orchestrator(monkeypatch, _router(), model="qwen-plus", timeout_ms=12_000)

    orch.suggest_books_only([txn("瑞幸")], 0)

    (kwargs,) = stub.client_kwargs
    assert kwargs["base_url"] == "http://llm.test/v1"
    assert kwargs["api_key"] == "k"
    assert kwargs["timeout"] == pytest.approx(12.0)
    assert kwargs["max_retries"] == 0
    (call,) = stub.calls
    assert call["model"] == "qwen-plus"
    assert call["temperature"] == 0
    assert "日常 (ID: daily)" in user_content(call)
    assert "描述: 吃喝与通勤" in user_content(call)


def test_fenced_reply_is_accepted(monkeypatch) -> None:
    reply = _router(book=lambda kw: "```json\n" + _book_reply(kw, "travel") + "\n```")
    orch, _ = _orchestrator(monkeypatch, reply)
    flows = [txn("携程")]

    outcome = orch.suggest_books_only(flows, 0)

    assert outcome.succeeded == 1
    assert flows[0].suggested_book_id == "travel"
    assert flows[0].suggestion().book_name == "旅行"


def test_failed_batch_is_skipped_and_later_batches_run(monkeypatch) -> None:
    seen = []

    def book(kwargs):
        seen.append(kwargs)
        return timeout_error() if len(seen) == 1 else _book_reply(kwargs)

    orch, _ = _orchestrator(monkeypatch, _router(book=book), batch_size=2)
    flows = [txn("a1"), txn("b2"), txn("c3")]

    outcome = orch.suggest_books_only(flows, 0)

    assert outcome.succeeded == 1
    assert flows[0].meta.suggestion is None
    assert flows[2].suggested_book_id == "daily"
    stats = outcome.batch_info.stats
    assert (stats.total_batches, stats.completed_batches, stats.failed_batches) == (2, 1, 1)
    assert stats.last_batch_size == 1


def test_invalid_reply_items_are_dropped(monkeypatch) -> None:
    reply = _router(book=lambda kw: as_json([{"bookId": "daily"}, "junk", {"index": 1, "bookId": "travel"}]))
    orch, _ = _orchestrator(monkeypatch, reply)
    flows = [txn("a1"), txn("b2")]

    outcome = orch.suggest_books_only(flows, 0)

    assert outcome.succeeded == 1
    assert flows[0].meta.suggestion is None
    assert flows[1].suggested_book_id == "travel"


def test_unknown_or_missing_ledger_is_not_a_success(monkeypatch) -> None:
    reply = _router(
        book=lambda kw: as_json(
            [{"index": 0, "bookId": "ghost"}, {"index": 1, "bookId": None}, {"index": 2, "bookId": "travel"}]
        )
    )
    orch, _ = _orchestrator(monkeypatch, reply)
    flows = [txn("a1"), txn("b2"), txn("c3")]
    flows[1].suggestion().book_id = "daily"

    outcome = orch.suggest_books_only(flows, 0)

    assert outcome.succeeded == 1
    assert flows[0].meta.suggestion is None
    assert flows[1].suggested_book_id == "daily"
    assert flows[2].suggested_book_id == "travel"


def test_ledger_outside_candidates_is_rejected(monkeypatch) -> None:
    orch, _ = _orchestrator(monkeypatch, _router(book=lambda kw: _book_reply(kw, "travel")))
    flows = [txn("携程")]

    outcome = orch.suggest_books_only(flows, 0, candidate_book_ids=["daily"])

    assert outcome.applied is False
    assert outcome.succeeded == 0
    assert flows[0].meta.suggestion is None


def test_non_array_reply_fails_the_batch(monkeypatch) -> None:
    reply = _router(book=lambda kw: '{"index": 0, "bookId": "daily"}')
    orch, _ = _orchestrator(monkeypatch, reply)

    outcome = orch.suggest_books_only([txn("a1")], 0)

    assert outcome.applied is False
    assert outcome.batch_info.stats.failed_batches == 1


def test_known_category_is_resolved_locally_with_memo_call(monkeypatch) -> None:
    orch, stub = _orchestrator(monkeypatch, _router())
    known = txn("星巴克", industry_type="餐饮/咖啡", description="星巴克 订单号123 拿铁")
    unknown = txn("健身房", industry_type="运动")
    for flow in (known, unknown):
        flow.suggestion().book_id = "daily"

    outcome = orch.suggest_categories_only([known, unknown], 0)

    assert outcome.succeeded == 2
    (memo_call,) = stub.calls_for(prompting.MEMO_SYSTEM_PROMPT)
    assert flow_field(memo_call, "备注") == ["星巴克 订单号123 拿铁"]
    (category_call,) = stub.calls_for(prompting.CATEGORY_SYSTEM_PROMPT)
    assert flow_field(category_call, "交易对象") == ["健身房"]
    assert flow_field(category_call, "流水归属") == ["日常"]
    assert known.suggestion().confidence == pytest.approx(0.95)
    assert known.description == "简化备注"
    assert unknown.suggestion().industry_type == "餐饮/咖啡"


def test_memo_failure_keeps_local_match(monkeypatch) -> None:
    orch, _ = _orchestrator(monkeypatch, _router(memo=lambda kw: connection_error()))
    flow = txn("星巴克", industry_type="餐饮/咖啡", description="原备注")
    flow.suggestion().book_id = "daily"

    outcome = orch.suggest_categories_only([flow], 0)

    assert outcome.succeeded == 1
    assert flow.suggestion().industry_type == "餐饮/咖啡"
    assert flow.description == "原备注"


def test_unknown_ledger_uses_generic_prompt(monkeypatch) -> None:
    orch, stub = _orchestrator(monkeypatch, _router())

    orch.suggest_categories_only([txn("新店")], 0)

    (call,) = stub.calls_for(prompting.CATEGORY_SYSTEM_PROMPT)
    assert flow_field(call, "流水归属") == [prompting.UNKNOWN_BOOK]


def test_placeholder_category_is_replaced(monkeypatch) -> None:
    def category(kwargs):
        return as_json([{"index": 0, "primaryCategory": "交通", "industryType": "一级"}])

    orch, _ = _orchestrator(monkeypatch, _router(category=category))
    flow = txn("地铁")

    orch.suggest_categories_only([flow], 0)

    assert flow.suggestion().industry_type == "交通"


def test_unconfigured_model_makes_no_calls(monkeypatch) -> None:
    orch, stub = _orchestrator(monkeypatch, _router(), base_url=None)

    outcome = orch.apply_suggestions([txn("a1")], 0)

    assert outcome.applied is False
    assert outcome.batch_info is None
    assert stub.calls == []


def test_transport_errors_map_to_user_messages(monkeypatch) -> None:
    stub = OpenAIStub(lambda kw: connection_error())
    monkeypatch.setattr(client_module, "OpenAI", stub.client_class)
    with pytest.raises(client_module.LlmConnectionError, match="连接失败"):
        client_module.complete(_settings(), "sys", "user", purpose="test")

    stub = OpenAIStub(lambda kw: timeout_error())
    monkeypatch.setattr(client_module, "OpenAI", stub.client_class)
    with pytest.raises(client_module.LlmTimeoutError, match="300秒"):
        client_module.complete(_settings(), "sys", "user", purpose="test")


@pytest.mark.parametrize("raw", [None, "", "not json", '{"a": 1}'])
def test_decode_array_rejects_non_arrays(raw) -> None:
    with pytest.raises(client_module.LlmResponseError):
        client_module.decode_array(raw)


def test_decode_array_strips_fences() -> None:
    assert client_module.decode_array('```json\n[{"index": 0}]\n```') == [{"index": 0}]
    assert client_module.decode_array("```\n[]\n```") == []


def _summary(**kw) -> BookSummary:
    return BookSummary(
        book_id="daily",
        book_name="日常",
        description=None,
        flow_types=("支出",),
        primary_categories=kw.get("primary", ("交通", "餐饮")),
        secondary_categories=kw.get("secondary", ("餐饮/咖啡",)),
    )


def test_fuzzy_category_match_levels() -> None:
    exact = fuzzy_match_category(txn(industry_type="餐饮 / 咖啡"), _summary())
    assert (exact.industry_type, exact.confidence) == ("餐饮/咖啡", 0.95)
    assert (exact.primary_category, exact.secondary_category) == ("餐饮", "咖啡")

    contains = fuzzy_match_category(txn(industry_type="交通出行"), _summary())
    assert (contains.industry_type, contains.confidence) == ("交通", 0.85)

    prefixed = fuzzy_match_category(txn(industry_type="娱乐/电影"), _summary(primary=("娱乐",), secondary=()))
    assert (prefixed.industry_type, prefixed.secondary_category, prefixed.confidence) == ("娱乐", None, 0.85)

    assert fuzzy_match_category(txn(industry_type="医疗"), _summary()) is None
    assert fuzzy_match_category(txn(), _summary()) is None


def test_book_summaries_split_category_levels() -> None:
    r = repos(books=BOOKS, history=HISTORY)
    daily, travel = build_book_summaries(BOOKS, r.history, 0)
    assert daily.primary_categories == ("交通",)
    assert daily.secondary_categories == ("餐饮/咖啡",)
    assert daily.flow_types == ("支出",)
    assert travel.secondary_categories == ("旅行/机票",)
