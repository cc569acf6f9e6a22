"""Chat-completions transport for the model fallback.

One request per call, no retries. Transport failures are re-raised as
:class:`LlmError` subclasses carrying user-facing messages; replies that are
empty, not JSON or not a JSON array raise :class:`LlmResponseError`. Array
elements that fail validation are dropped individually.
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import Sequence
from typing import Any

import openai
from openai import OpenAI
from pydantic import BaseModel, ValidationError

from ..logging_setup import get_logger
from ..models import BookReply, CategoryReply, MemoReply
from ..settings import LlmSettings
from . import prompting

_FENCE_RE = re.compile(r"```json?|```")
# Models occasionally echo the format placeholder instead of a category name.
_PLACEHOLDER_CATEGORIES = frozenset({"一级", "一级分类"})

_logger = get_logger("ledger_sense.llm.client")


class LlmError(RuntimeError):
    """Base class for model-call failures."""


class LlmTimeoutError(LlmError):
    pass


class LlmConnectionError(LlmError):
    pass


class LlmResponseError(LlmError):
    pass


def _create_client(settings: LlmSettings) -> OpenAI:
    if not settings.base_url:
        raise ValueError("LLM_BASE_URL is not configured")
    return OpenAI(
        base_url=f"{settings.base_url.rstrip('/')}/v1",
        api_key=settings.api_key or "not-set",
        timeout=settings.timeout_seconds,
        max_retries=0,
    )


def _timeout_label(settings: LlmSettings) -> str:
    seconds = settings.timeout_seconds
    return f"{int(seconds)}" if seconds == int(seconds) else f"{seconds:g}"


def decode_array(raw: str | None) -> list[Any]:
    """Decode a model reply into a JSON array, tolerating Markdown code fences."""

    text = (raw or "").strip()
    if not text:
        raise LlmResponseError("LLM 返回空内容")
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise LlmResponseError(f"LLM 返回内容不是合法 JSON: {e.msg}") from e
    if not isinstance(parsed, list):
        raise LlmResponseError("LLM 返回内容不是数组")
    return parsed


def complete(settings: LlmSettings, system: str, user: str, *, purpose: str) -> list[Any]:
    """Send one chat request and return the decoded JSON array."""

    client = _create_client(settings)
    t0 = time.perf_counter()
    try:
        resp = client.chat.completions.create(
            model=settings.model,
            temperature=0,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
    except openai.APITimeoutError as e:
        raise LlmTimeoutError(
            f"LLM 请求超时（{_timeout_label(settings)}秒），请检查网络连接或稍后重试"
        ) from e
    except openai.APIConnectionError as e:
        raise LlmConnectionError("LLM 服务连接失败，请检查网络连接或 LLM 服务是否可用") from e
    except openai.APIStatusError as e:
        raise LlmResponseError(f"LLM 接口返回错误: {e.status_code} {e.message}") from e

    dt_ms = (time.perf_counter() - t0) * 1000.0
    try:
        content = resp.choices[0].message.content
    except (AttributeError, IndexError, TypeError):
        content = None
    items = decode_array(content)
    _logger.info(
        "llm:call_done purpose=%s items=%d latency_ms=%.2f",
        purpose,
        len(items),
        dt_ms,
    )
    return items


def _validate_items[M: BaseModel](items: Sequence[Any], model: type[M], purpose: str) -> list[M]:
    out: list[M] = []
    for item in items:
        if not isinstance(item, dict):
            _logger.warning("llm:skip_item purpose=%s reason=not_object", purpose)
            continue
        try:
            out.append(model.model_validate(item))
        except ValidationError as e:
            _logger.warning(
                "llm:skip_item purpose=%s errors=%d", purpose, len(e.errors())
            )
    return out


def _normalize_category(reply: CategoryReply) -> CategoryReply:
    industry = reply.industry_type
    if industry in _PLACEHOLDER_CATEGORIES:
        industry = reply.primary_category
    if not industry and reply.primary_category:
        if reply.secondary_category:
            industry = f"{reply.primary_category}/{reply.secondary_category}"
        else:
            industry = reply.primary_category
    if industry == reply.industry_type:
        return reply
    return reply.model_copy(update={"industry_type": industry})


def request_books(settings: LlmSettings, prompt: str) -> list[BookReply]:
    items = complete(settings, prompting.BOOK_SYSTEM_PROMPT, prompt, purpose="book")
    return _validate_items(items, BookReply, "book")


def request_categories(settings: LlmSettings, prompt: str) -> list[CategoryReply]:
    items = complete(settings, prompting.CATEGORY_SYSTEM_PROMPT, prompt, purpose="category")
    return [_normalize_category(r) for r in _validate_items(items, CategoryReply, "category")]


def request_memos(settings: LlmSettings, prompt: str) -> list[MemoReply]:
    items = complete(settings, prompting.MEMO_SYSTEM_PROMPT, prompt, purpose="memo")
    return _validate_items(items, MemoReply, "memo")
