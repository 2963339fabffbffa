"""Shared fixtures: an in-memory stand-in for the Supabase query builder."""

import copy
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any

import pytest
from postgrest.exceptions import APIError

UNIQUE_KEYS: dict[str, list[tuple[str, ...]]] = {
    "follow_up_tasks": [("team_id", "owner_user_id", "thread_id", "last_message_id")],
}


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return value


def _generate_columns(table: str, row: dict[str, Any]) -> None:
    if table == "follow_up_tasks":
        row["sort_at"] = row.get("due_at") or row.get("created_at")


class _Negation:
    def __init__(self, query: "FakeQuery") -> None:
        self._query = query

    def is_(self, column: str, value: str) -> "FakeQuery":
        assert value == "null"
        self._query._filters.append(lambda row: row.get(column) is not None)
        return self._query


class FakeQuery:
    """Chainable subset of the postgrest request builder."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self._db = db
        self._table = table
        self._op = "select"
        self._payload: dict[str, Any] | None = None
        self._filters: list[Callable[[dict[str, Any]], bool]] = []
        self._order: list[tuple[str, bool]] = []
        self._limit: int | None = None

    def select(self, *_columns: str) -> "FakeQuery":
        self._op = "select"
        return self

    def insert(self, row: dict[str, Any]) -> "FakeQuery":
        self._op = "insert"
        self._payload = row
        return self

    def update(self, payload: dict[str, Any]) -> "FakeQuery":
        self._op = "update"
        self._payload = payload
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def lte(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(
            lambda row: row.get(column) is not None
            and _comparable(row[column]) <= _comparable(value)
        )
        return self

    def is_(self, column: str, value: str) -> "FakeQuery":
        assert value == "null"
        self._filters.append(lambda row: row.get(column) is None)
        return self

    @property
    def not_(self) -> _Negation:
        return _Negation(self)

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._order.append((column, desc))
        return self

    def limit(self, count: int) -> "FakeQuery":
        self._limit = count
        return self

    def execute(self) -> SimpleNamespace:
        self._db.calls.append((self._table, self._op))
        rows = self._db.tables[self._table]

        if self._op == "insert":
            row = copy.deepcopy(self._payload or {})
            self._db.check_unique(self._table, row)
            _generate_columns(self._table, row)
            rows.append(row)
            return SimpleNamespace(data=[copy.deepcopy(row)])

        matched = [row for row in rows if all(f(row) for f in self._filters)]

        if self._op == "update":
            for hook in list(self._db.before_update):
                hook(self._table, matched)
            matched = [row for row in rows if all(f(row) for f in self._filters)]
            for row in matched:
                row.update(copy.deepcopy(self._payload or {}))
                _generate_columns(self._table, row)
            return SimpleNamespace(data=[copy.deepcopy(row) for row in matched])

        for column, desc in reversed(self._order):
            matched.sort(
                key=lambda row, c=column: (
                    row.get(c) is None,
                    _comparable(row.get(c)) if row.get(c) is not None else 0,
                ),
                reverse=desc,
            )
        if self._limit is not None:
            matched = matched[: self._limit]
        return SimpleNamespace(data=[copy.deepcopy(row) for row in matched])


class FakeSupabase:
    """In-memory Supabase client with unique indexes and generated columns."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.calls: list[tuple[str, str]] = []
        self.before_update: list[Callable[[str, list[dict[str, Any]]], None]] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def check_unique(self, table: str, row: dict[str, Any]) -> None:
        for columns in UNIQUE_KEYS.get(table, []):
            key = tuple(row.get(c) for c in columns)
            if any(tuple(r.get(c) for c in columns) == key for r in self.tables[table]):
                raise APIError(
                    {
                        "code": "23505",
                        "message": "duplicate key value violates unique constraint",
                        "details": f"Key {columns}={key} already exists.",
                        "hint": "",
                    }
                )

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables[table]


class FakeClock:
    """Settable clock for due-time tests."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fake_db() -> FakeSupabase:
    """Empty in-memory database."""
    return FakeSupabase()


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at 2025-01-10T09:00Z."""
    return FakeClock(datetime(2025, 1, 10, 9, 0, tzinfo=UTC))
