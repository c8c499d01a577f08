"""Shared test doubles for Fleetly tests.

Plain classes and functions, not fixtures; conftest.py wraps the ones that
tests take as fixtures.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Sequence

from fleetly.infra.datastore import FetchError, MutationOp, Table


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


_COMPARATORS = {
    "eq": lambda a, b: a == b,
    "neq": lambda a, b: a != b,
    "gt": lambda a, b: a is not None and a > b,
    "gte": lambda a, b: a is not None and a >= b,
    "lt": lambda a, b: a is not None and a < b,
    "lte": lambda a, b: a is not None and a <= b,
}


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any] | None) -> bool:
    for column, spec in (filters or {}).items():
        value = row.get(column)
        if spec is None:
            if value is not None:
                return False
        elif isinstance(spec, tuple) and len(spec) == 2 and spec[0] in _COMPARATORS:
            if not _COMPARATORS[spec[0]](value, spec[1]):
                return False
        elif isinstance(spec, (list, tuple, set, frozenset)):
            if value not in spec:
                return False
        elif value != spec:
            return False
    return True


class FakeDataStore:
    """In-memory DataStoreClient.

    Set ``fail = True`` to make every call raise FetchError, or add
    ``(table, op)`` pairs to ``fail_ops`` to fail only those mutations.
    ``calls`` counts queries per table so tests can tell a cache hit from a
    store round trip. ``atomic()`` restores the tables when its block raises.
    """

    def __init__(self, tables: Mapping[str, list[dict[str, Any]]] | None = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {t.value: [] for t in Table}
        for name, rows in (tables or {}).items():
            self.seed(name, rows)
        self.fail = False
        self.fail_ops: set[tuple[Table, MutationOp]] = set()
        self.atomic_scopes = 0
        self.calls: dict[str, int] = {}
        self.mutations: list[tuple[str, str, dict[str, Any] | None, dict[str, Any] | None]] = []
        self._lock = threading.Lock()
        self._next_id = 1000

    def seed(self, table: Table | str, rows: Sequence[Mapping[str, Any]]) -> None:
        self.tables[Table(table).value].extend(dict(r) for r in rows)

    def query(
        self,
        table: Table | str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table = Table(table)
        with self._lock:
            self.calls[table.value] = self.calls.get(table.value, 0) + 1
            if self.fail:
                raise FetchError(f"query on {table.value} failed", table=table.value)
            rows = [copy.deepcopy(r) for r in self.tables[table.value] if _matches(r, filters)]

        for column in reversed(order_by or []):
            descending = column.startswith("-")
            name = column.lstrip("-")
            rows.sort(key=lambda r: (r.get(name) is None, r.get(name)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def mutate(
        self,
        table: Table | str,
        op: MutationOp | str,
        payload: Mapping[str, Any] | None = None,
        *,
        match: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        table = Table(table)
        op = MutationOp(op)
        with self._lock:
            self.mutations.append(
                (table.value, op.value, dict(payload) if payload else None, dict(match) if match else None)
            )
            if self.fail or (table, op) in self.fail_ops:
                raise FetchError(f"{op.value} on {table.value} failed", table=table.value)

            rows = self.tables[table.value]
            if op == MutationOp.INSERT:
                row = {"id": self._next_id, **dict(payload or {})}
                self._next_id += 1
                rows.append(row)
                return copy.deepcopy(row)

            hit = [r for r in rows if _matches(r, match)]
            if op == MutationOp.UPDATE:
                for r in hit:
                    r.update(payload or {})
            else:
                self.tables[table.value] = [r for r in rows if r not in hit]
            return copy.deepcopy(hit[0]) if hit else None

    @contextmanager
    def atomic(self) -> Iterator[None]:
        self.atomic_scopes += 1
        snapshot = copy.deepcopy(self.tables)
        try:
            yield
        except Exception:
            with self._lock:
                self.tables = snapshot
            raise

    def call_count(self, table: Table | str) -> int:
        return self.calls.get(Table(table).value, 0)
