"""Collaborator contracts for ledger, history, profile and rule storage.

Persistence is owned by the host application. The pipeline only talks to
these protocols; the in-memory implementations back the CLI and the tests.
Every request may re-read fresh state, nothing here is cached.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from decimal import Decimal
from os import PathLike
from pathlib import Path
from typing import Any, Protocol

from .models import (
    Book,
    LedgerProfile,
    MatchingRule,
    RuleConditions,
    RuleSource,
    RuleType,
    Transaction,
)


class BookRepository(Protocol):
    def list_books(
        self, user_id: int, candidate_book_ids: Sequence[str] | None = None
    ) -> list[Book]: ...


class HistoryRepository(Protocol):
    def transactions(self, user_id: int, *, book_id: str | None = None) -> list[Transaction]: ...

    def count(self, user_id: int) -> int: ...

    def account_names(self, user_id: int) -> list[str]: ...


class ProfileRepository(Protocol):
    def get(self, book_id: str) -> LedgerProfile | None: ...

    def save(self, profile: LedgerProfile) -> None: ...


class RuleRepository(Protocol):
    def list_rules(self, user_id: int, *, enabled_only: bool = True) -> list[MatchingRule]: ...

    def count(self, user_id: int) -> int: ...

    def create(self, rule: MatchingRule) -> MatchingRule: ...

    def update(self, rule: MatchingRule) -> None: ...

    def increment_hit(self, rule_id: int) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryBooks:
    def __init__(self, books: Iterable[Book] = ()) -> None:
        self._books = list(books)

    def add(self, book: Book) -> None:
        self._books.append(book)

    def list_books(
        self, user_id: int, candidate_book_ids: Sequence[str] | None = None
    ) -> list[Book]:
        allowed = set(candidate_book_ids) if candidate_book_ids else None
        return [
            b
            for b in self._books
            if b.user_id == user_id and (allowed is None or b.book_id in allowed)
        ]


class InMemoryHistory:
    """Committed transactions keyed by user; ``book_id`` must be set on each."""

    def __init__(self, user_id: int = 0, transactions: Iterable[Transaction] = ()) -> None:
        self._by_user: dict[int, list[Transaction]] = {}
        self._accounts: dict[int, list[str]] = {}
        self.extend(user_id, transactions)

    def extend(self, user_id: int, transactions: Iterable[Transaction]) -> None:
        self._by_user.setdefault(user_id, []).extend(transactions)

    def set_account_names(self, user_id: int, names: Iterable[str]) -> None:
        self._accounts[user_id] = list(names)

    def transactions(self, user_id: int, *, book_id: str | None = None) -> list[Transaction]:
        rows = self._by_user.get(user_id, [])
        if book_id is None:
            return list(rows)
        return [t for t in rows if t.book_id == book_id]

    def count(self, user_id: int) -> int:
        return len(self._by_user.get(user_id, []))

    def account_names(self, user_id: int) -> list[str]:
        return list(self._accounts.get(user_id, []))


class InMemoryProfiles:
    def __init__(self) -> None:
        self._profiles: dict[str, LedgerProfile] = {}

    def get(self, book_id: str) -> LedgerProfile | None:
        return self._profiles.get(book_id)

    def save(self, profile: LedgerProfile) -> None:
        self._profiles[profile.book_id] = profile


class InMemoryRules:
    """Rule store assigning ascending integer ids in creation order."""

    def __init__(self, rules: Iterable[MatchingRule] = ()) -> None:
        self._rules: list[MatchingRule] = []
        self._next_id = 1
        for rule in rules:
            self.create(rule)

    def list_rules(self, user_id: int, *, enabled_only: bool = True) -> list[MatchingRule]:
        return [
            r for r in self._rules if r.user_id == user_id and (r.enabled or not enabled_only)
        ]

    def count(self, user_id: int) -> int:
        return sum(1 for r in self._rules if r.user_id == user_id)

    def get(self, rule_id: int) -> MatchingRule | None:
        for r in self._rules:
            if r.id == rule_id:
                return r
        return None

    def create(self, rule: MatchingRule) -> MatchingRule:
        stored = replace(rule, id=self._next_id)
        self._next_id += 1
        self._rules.append(stored)
        return stored

    def update(self, rule: MatchingRule) -> None:
        for i, existing in enumerate(self._rules):
            if existing.id == rule.id:
                self._rules[i] = rule
                return
        raise KeyError(f"rule {rule.id} not found")

    def increment_hit(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        if rule is None:
            raise KeyError(f"rule {rule_id} not found")
        rule.hit_count += 1


@dataclass(slots=True)
class Repositories:
    books: BookRepository
    history: HistoryRepository
    profiles: ProfileRepository
    rules: RuleRepository


def in_memory() -> Repositories:
    return Repositories(
        books=InMemoryBooks(),
        history=InMemoryHistory(),
        profiles=InMemoryProfiles(),
        rules=InMemoryRules(),
    )


# ---------------------------------------------------------------------------
# JSON state files (CLI)
# ---------------------------------------------------------------------------


def _transaction_from_json(item: Mapping[str, Any]) -> Transaction:
    return Transaction(
        day=str(item["day"]),
        flow_type=str(item.get("flow_type") or ""),
        money=Decimal(str(item["money"])),
        name=str(item.get("name") or ""),
        description=str(item.get("description") or ""),
        industry_type=str(item.get("industry_type") or ""),
        pay_type=str(item.get("pay_type") or ""),
        goods=str(item.get("goods") or ""),
        account_name=str(item.get("account_name") or ""),
        attribution=str(item.get("attribution") or ""),
        book_id=item.get("book_id"),
    )


def _rule_from_json(user_id: int, item: Mapping[str, Any]) -> MatchingRule:
    cond = item.get("conditions") or {}
    return MatchingRule(
        user_id=user_id,
        name=str(item.get("name") or ""),
        rule_type=RuleType(item["rule_type"]),
        conditions=RuleConditions(
            merchant_keywords=tuple(cond.get("merchant_keywords") or ()),
            description_keywords=tuple(cond.get("description_keywords") or ()),
            min_amount=Decimal(str(cond["min_amount"])) if cond.get("min_amount") is not None else None,
            max_amount=Decimal(str(cond["max_amount"])) if cond.get("max_amount") is not None else None,
            pay_types=tuple(cond.get("pay_types") or ()),
        ),
        target_book_id=str(item["target_book_id"]),
        target_category=item.get("target_category"),
        target_flow_type=item.get("target_flow_type"),
        priority=int(item.get("priority", 50)),
        enabled=bool(item.get("enabled", True)),
        hit_count=int(item.get("hit_count", 0)),
        source=RuleSource(item.get("source", RuleSource.USER)),
    )


def load_state(path: str | PathLike[str], *, user_id: int = 0) -> Repositories:
    """Seed in-memory repositories from a JSON state file.

    Expected keys: ``books`` (``book_id``, ``name``, ``description``),
    ``history`` (transactions with ``book_id``), ``rules`` and optional
    ``account_names``. Malformed files raise ``ValueError``.
    """

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"state file is not valid JSON: {path}") from e
    if not isinstance(data, Mapping):
        raise ValueError("state file must contain a JSON object")

    try:
        books = InMemoryBooks(
            Book(
                book_id=str(b["book_id"]),
                name=str(b.get("name") or b["book_id"]),
                description=b.get("description"),
                user_id=user_id,
            )
            for b in data.get("books", [])
        )
        history = InMemoryHistory(user_id, (_transaction_from_json(t) for t in data.get("history", [])))
        history.set_account_names(user_id, data.get("account_names", []))
        rules = InMemoryRules(_rule_from_json(user_id, r) for r in data.get("rules", []))
    except (KeyError, TypeError, ArithmeticError) as e:
        raise ValueError(f"invalid state file {path}: {e}") from e
    return Repositories(books=books, history=history, profiles=InMemoryProfiles(), rules=rules)
