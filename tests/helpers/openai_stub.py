"""Test helpers to stub the OpenAI chat-completions client used by llm/client.py.

Tests hand the stub a ``reply`` callable receiving the request kwargs and
returning either the assistant text or an exception instance to raise. Every
call's kwargs are recorded (together with the client constructor kwargs) so
tests can make lightweight assertions on batching and configuration.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any

import httpx
import openai

_FLOW_RE = re.compile(r"^Flow #(\d+):", re.MULTILINE)

type Reply = Callable[[dict[str, Any]], str | BaseException]


def user_content(kwargs: dict[str, Any]) -> str:
    return next(m["content"] for m in kwargs["messages"] if m["role"] == "user")


def system_content(kwargs: dict[str, Any]) -> str:
    return next(m["content"] for m in kwargs["messages"] if m["role"] == "system")


def flow_count(kwargs: dict[str, Any]) -> int:
    """Number of ``Flow #i`` blocks in the request's user message."""

    return len(_FLOW_RE.findall(user_content(kwargs)))


def flow_field(kwargs: dict[str, Any], label: str) -> list[str]:
    """Values of ``label: value`` lines in flow order (e.g. ``交易对象``)."""

    pattern = re.compile(rf"^{re.escape(label)}: (.*)$", re.MULTILINE)
    blocks = _FLOW_RE.split(user_content(kwargs))[2::2]
    out: list[str] = []
    for block in blocks:
        m = pattern.search(block)
        out.append(m.group(1) if m else "")
    return out


def as_json(items: list[dict[str, Any]], *, fenced: bool = False) -> str:
    text = json.dumps(items, ensure_ascii=False)
    return f"```json\n{text}\n```" if fenced else text


def timeout_error() -> openai.APITimeoutError:
    return openai.APITimeoutError(request=httpx.Request("POST", "http://llm.test/v1/chat/completions"))


def connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(
        request=httpx.Request("POST", "http://llm.test/v1/chat/completions")
    )


class _Message:
    def __init__(self, content: str | None) -> None:
        self.content = content


class _Choice:
    def __init__(self, content: str | None) -> None:
        self.message = _Message(content)


class _Completion:
    def __init__(self, content: str | None) -> None:
        self.choices = [_Choice(content)]


class OpenAIStub:
    """Factory for a class shaped like ``openai.OpenAI``.

    Use as ``monkeypatch.setattr(client_module, "OpenAI", stub.client_class)``.
    """

    def __init__(self, reply: Reply) -> None:
        self._reply = reply
        self.calls: list[dict[str, Any]] = []
        self.client_kwargs: list[dict[str, Any]] = []

        outer = self

        class _Completions:
            def create(self, **kwargs: Any) -> _Completion:
                outer.calls.append(kwargs)
                result = outer._reply(kwargs)
                if isinstance(result, BaseException):
                    raise result
                return _Completion(result)

        class _Chat:
            def __init__(self) -> None:
                self.completions = _Completions()

        class _Client:
            def __init__(self, *args: Any, **kwargs: Any) -> None:
                outer.client_kwargs.append(kwargs)
                self.chat = _Chat()

        self.client_class = _Client

    def calls_for(self, system_prefix: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if system_content(c).startswith(system_prefix)]
