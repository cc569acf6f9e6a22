# ruff: noqa: E402, I001
import sys
from pathlib import Path

import pytest


_ROOT = Path(__file__).resolve().parents[1]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

from ledger_sense import pipeline  # noqa: E402
from ledger_sense.dictionary import CategoryDictionary  # noqa: E402
from ledger_sense.llm import client as client_module  # noqa: E402
from ledger_sense.llm import prompting  # noqa: E402
from ledger_sense.models import Book, MatchingRule, RuleConditions, RuleType  # noqa: E402
from ledger_sense.pipeline import ClassifyMode, ClassifyRequest, MatchMode, PipelineCoordinator  # noqa: E402
from ledger_sense.progress import ProgressStore  # noqa: E402
from ledger_sense.settings import LlmSettings  # noqa: E402
from tests.helpers.factories import repeat, repos, txn  # noqa: E402
from tests.helpers.openai_stub import OpenAIStub, as_json, connection_error, flow_count, system_content  # noqa: E402

BOOKS = [Book("daily", "日常"), Book("commute", "通勤"), Book("travel", "旅行")]
UNCONFIGURED = LlmSettings(base_url=None, api_key=None)
CONFIGURED = LlmSettings(base_url="http://llm.test", api_key="k", batch_size=5)


def _history():
    return [
        *repeat(25, name="星巴克", money="32", pay_type="微信", book_id="daily", industry_type="餐饮/咖啡"),
        *repeat(10, name="携程旅行", money="800", pay_type="支付宝", book_id="travel", industry_type="旅行/机票"),
    ]


def _repos(rules=()):
    r = repos(books=BOOKS, history=_history())
    for rule in rules:
        r.rules.create(rule)
    return r


def _didi_rule() -> MatchingRule:
    return MatchingRule(
        user_id=0,
        name="滴滴打车",
        rule_type=RuleType.MERCHANT_KEYWORD,
        conditions=RuleConditions(merchant_keywords=("滴滴",)),
        target_book_id="commute",
        target_category="交通/打车",
        priority=60,
    )


def _starbucks_rule() -> MatchingRule:
    return MatchingRule(
        user_id=0,
        name="咖啡报销",
        rule_type=RuleType.MERCHANT_KEYWORD,
        conditions=RuleConditions(merchant_keywords=("星巴克",)),
        target_book_id="commute",
        priority=90,
    )


def _run(r, flows, *, settings=UNCONFIGURED, progress=None, dictionary=None, **request):
    coordinator = PipelineCoordinator(r, settings=settings, dictionary=dictionary, progress=progress)
    return coordinator.run(ClassifyRequest(user_id=0, transactions=flows, **request))


def _stub(monkeypatch, reply):
    stub = OpenAIStub(reply)
    monkeypatch.setattr(client_module, "OpenAI", stub.client_class)
    return stub


def _model_reply(book_id="travel"):
    def reply(kwargs):
        n = flow_count(kwargs)
        if system_content(kwargs) == prompting.BOOK_SYSTEM_PROMPT:
            return as_json([{"index": i, "bookId": book_id, "confidence": 0.7} for i in range(n)])
        return as_json([{"index": i, "primaryCategory": "旅行", "description": "简化"} for i in range(n)])

    return reply


def test_unconfigured_model_returns_history_matches_and_notes_remainder() -> None:
    known = txn("星巴克", "28", pay_type="微信")
    unknown = txn("未知商户XYZ", "9999")

    result = _run(_repos(), [known, unknown])

    assert result.success
    assert result.transactions == [known, unknown]
    assert known.suggested_book_id == "daily"
    assert unknown.suggested_book_id is None
    assert result.counters["profile"] == 1
    assert result.suggested == 1
    assert "未配置AI服务，无法处理剩余 1 条" in result.message


def test_empty_request_fails() -> None:
    result = _run(_repos(), [])
    assert result.success is False
    assert result.message == pipeline.MSG_NO_FLOWS


def test_rule_wins_over_profile() -> None:
    flow = txn("星巴克", "28", pay_type="微信")

    result = _run(_repos([_starbucks_rule()]), [flow], match_mode=MatchMode.HISTORY_ONLY)

    s = flow.suggestion()
    assert (s.book_id, s.book_name, s.source) == ("commute", "通勤", "rule")
    assert s.comment == "规则匹配(咖啡报销)"
    assert result.counters["rule"] == 1
    assert result.counters["profile"] == 0


def test_rule_sets_ledger_and_category() -> None:
    flow = txn("滴滴出行", "23")

    _run(_repos([_didi_rule()]), [flow], match_mode=MatchMode.HISTORY_ONLY)

    s = flow.suggestion()
    assert s.book_id == "commute"
    assert s.industry_type == "交通/打车"
    assert 0.5 <= s.confidence <= 0.95
    assert s.rule_id == 1


def test_attribution_assigns_named_ledger() -> None:
    flow = txn("某酒店", "600", attribution="旅行")

    result = _run(_repos(), [flow], match_mode=MatchMode.HISTORY_ONLY)

    assert flow.suggested_book_id == "travel"
    assert flow.suggestion().confidence == pytest.approx(0.8)
    assert result.counters["attribution"] == 1
    assert result.message.startswith("历史匹配模式")


def test_dictionary_fills_category_without_ledger() -> None:
    flow = txn("瑞幸咖啡", "15")
    dictionary = CategoryDictionary({"餐饮/咖啡": ["瑞幸"]})

    result = _run(_repos(), [flow], dictionary=dictionary, mode=ClassifyMode.CATEGORY_ONLY)

    s = flow.suggestion()
    assert s.industry_type == "餐饮/咖啡"
    assert s.book_id is None
    assert s.comment == "关键字匹配(瑞幸)"
    assert result.counters["rule"] == 1
    assert "仅分类模式" in result.message


def test_ledger_only_clears_prior_ledgers_and_skips_rules() -> None:
    flow = txn("星巴克", "28", pay_type="微信")
    flow.suggestion().book_id = "commute"
    flow.suggestion().book_name = "通勤"

    result = _run(_repos([_starbucks_rule()]), [flow], mode=ClassifyMode.LEDGER_ONLY)

    assert flow.suggested_book_id == "daily"
    assert result.counters["rule"] == 0
    assert result.counters["profile"] == 1
    assert "仅账本模式" in result.message


def test_ledger_only_uses_category_share() -> None:
    flow = txn("新开的店", "9999", industry_type="餐饮/咖啡")

    result = _run(_repos(), [flow], mode=ClassifyMode.LEDGER_ONLY)

    s = flow.suggestion()
    assert s.book_id == "daily"
    assert s.comment == "分类占比兜底匹配(餐饮/咖啡, 占比: 100.0%)"
    assert result.counters["category_ratio"] == 1


def test_history_only_never_calls_model(monkeypatch) -> None:
    stub = _stub(monkeypatch, _model_reply())

    result = _run(
        _repos(), [txn("未知商户XYZ", "9999")], settings=CONFIGURED, match_mode=MatchMode.HISTORY_ONLY
    )

    assert result.success
    assert stub.calls == []
    assert "已跳过 AI 分类" in result.message


def test_model_handles_only_unresolved_flows(monkeypatch) -> None:
    stub = _stub(monkeypatch, _model_reply())
    known = txn("星巴克", "28", pay_type="微信")
    unknown = txn("未知商户XYZ", "9999")

    result = _run(_repos(), [known, unknown], settings=CONFIGURED)

    assert result.success
    assert flow_count(stub.calls_for(prompting.BOOK_SYSTEM_PROMPT)[0]) == 1
    assert unknown.suggested_book_id == "travel"
    assert unknown.suggestion().industry_type == "旅行"
    assert known.suggested_book_id == "daily"
    assert result.counters["llm"] == 1
    assert result.suggested == 2
    assert "AI 补充 1 条建议" in result.message


def test_model_only_skips_history(monkeypatch) -> None:
    stub = _stub(monkeypatch, _model_reply())
    flow = txn("星巴克", "28", pay_type="微信")

    result = _run(_repos([_starbucks_rule()]), [flow], settings=CONFIGURED, match_mode=MatchMode.MODEL_ONLY)

    assert flow.suggested_book_id == "travel"
    assert result.counters["rule"] == 0
    assert result.counters["profile"] == 0
    assert result.message == "AI 返回 1 条建议"
    assert len(stub.calls_for(prompting.BOOK_SYSTEM_PROMPT)) == 1


def test_category_only_with_model_only_skips_book_phase(monkeypatch) -> None:
    stub = _stub(monkeypatch, _model_reply())
    flow = txn("滴滴出行", "23")

    result = _run(
        _repos([_didi_rule()]),
        [flow],
        settings=CONFIGURED,
        mode=ClassifyMode.CATEGORY_ONLY,
        match_mode=MatchMode.MODEL_ONLY,
    )

    assert stub.calls_for(prompting.BOOK_SYSTEM_PROMPT) == []
    assert len(stub.calls_for(prompting.CATEGORY_SYSTEM_PROMPT)) == 1
    assert flow.suggestion().industry_type == "旅行"
    assert flow.suggested_book_id is None
    assert result.counters["rule"] == 0


def test_ledger_only_with_model_only_skips_category_phase(monkeypatch) -> None:
    stub = _stub(monkeypatch, _model_reply("daily"))
    flow = txn("未知商户XYZ", "9999")

    _run(_repos(), [flow], settings=CONFIGURED, mode=ClassifyMode.LEDGER_ONLY, match_mode=MatchMode.MODEL_ONLY)

    assert flow.suggested_book_id == "daily"
    assert stub.calls_for(prompting.CATEGORY_SYSTEM_PROMPT) == []


def test_all_model_batches_failing_without_history_is_an_error(monkeypatch) -> None:
    _stub(monkeypatch, lambda kwargs: connection_error())

    result = _run(_repos(), [txn("未知商户XYZ", "9999")], settings=CONFIGURED)

    assert result.success is False
    assert result.message == pipeline.MSG_ALL_UNAVAILABLE
    assert result.progress.llm_batch is not None


def test_partial_model_failure_after_history_is_success(monkeypatch) -> None:
    _stub(monkeypatch, lambda kwargs: connection_error())
    known = txn("星巴克", "28", pay_type="微信")

    result = _run(_repos(), [known, txn("未知商户XYZ", "9999")], settings=CONFIGURED)

    assert result.success
    assert "AI 补充 0 条建议" in result.message


class _RecordingStore(ProgressStore):
    def __init__(self) -> None:
        super().__init__()
        self.history = []

    def set(self, token, snapshot) -> None:
        self.history.append(snapshot)
        super().set(token, snapshot)


def test_progress_is_published_then_cleared() -> None:
    store = _RecordingStore()
    flows = [*repeat(11, name="星巴克", money="28", pay_type="微信"), txn("未知商户XYZ", "9999")]

    result = _run(_repos(), flows, progress=store, progress_token="tok")

    assert store.history
    assert store.get("tok") is None
    final = result.progress
    assert final.total == 12
    assert final.matched == 11
    stages = {s.key: s for s in final.stages}
    assert stages["profiles"].matched == 11
    assert stages["llm"].scope == 1


def test_classify_helper_accepts_mode_strings() -> None:
    flow = txn("滴滴出行", "23")

    result = pipeline.classify(
        _repos([_didi_rule()]),
        [flow],
        mode="category-only",
        match_mode="history-first",
        settings=UNCONFIGURED,
    )

    assert result.success
    assert flow.suggestion().industry_type == "交通/打车"
