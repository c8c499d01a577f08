"""Data-store client used inside cached fetch functions.

The services only see the narrow ``DataStoreClient`` protocol:

    query(table, filters)          -> list of row dicts
    mutate(table, op, payload)     -> affected row dict (or None)
    atomic()                       -> scope running the calls inside it in
                                      one transaction

``PostgresDataStore`` implements it on psycopg2. Any driver error is
re-raised as ``FetchError`` with the original exception as ``__cause__``.

Filter spec (all conditions ANDed):
    {"col": value}              col = value  (None -> IS NULL)
    {"col": [v1, v2]}           col = ANY(...)
    {"col": ("gte", value)}     operator form: eq, neq, gt, gte, lt, lte, ilike
"""

from __future__ import annotations

import threading
from contextlib import AbstractContextManager, contextmanager
from enum import Enum
from typing import Any, Callable, Iterator, Mapping, Protocol, Sequence

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import cursor as PgCursor

from fleetly.infra.db import txn
from fleetly.observability.logging import get_logger

logger = get_logger(__name__)


class FetchError(RuntimeError):
    """The data store could not serve a read or write."""

    def __init__(self, message: str, *, table: str | None = None):
        self.table = table
        super().__init__(message)


class Table(str, Enum):
    BASE_PRICES = "vehicle_base_prices"
    DURATION_TIERS = "pricing_duration_tiers"
    PROMO_CODES = "pricing_promos"
    SEASONAL_RULES = "seasonal_pricing_rules"
    TRANSPORT_FEES = "transport_fees"
    RENTALS = "rentals"


class MutationOp(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class DataStoreClient(Protocol):
    def query(
        self,
        table: Table | str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    def mutate(
        self,
        table: Table | str,
        op: MutationOp | str,
        payload: Mapping[str, Any] | None = None,
        *,
        match: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        ...

    def atomic(self) -> AbstractContextManager[None]:
        ...


_OPERATORS = {
    "eq": "=",
    "neq": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "ilike": "ILIKE",
}


def _condition(column: str, spec: Any) -> tuple[sql.Composable, list[Any]]:
    ident = sql.Identifier(column)
    if spec is None:
        return sql.SQL("{} IS NULL").format(ident), []
    if isinstance(spec, tuple) and len(spec) == 2 and spec[0] in _OPERATORS:
        op, value = spec
        return sql.SQL("{} " + _OPERATORS[op] + " %s").format(ident), [value]
    if isinstance(spec, (list, tuple, set, frozenset)):
        return sql.SQL("{} = ANY(%s)").format(ident), [list(spec)]
    return sql.SQL("{} = %s").format(ident), [spec]


def build_where(filters: Mapping[str, Any] | None) -> tuple[sql.Composable, list[Any]]:
    """Compose a WHERE clause (empty when there are no filters)."""
    if not filters:
        return sql.SQL(""), []

    parts: list[sql.Composable] = []
    params: list[Any] = []
    for column in sorted(filters):
        clause, values = _condition(column, filters[column])
        parts.append(clause)
        params.extend(values)
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(parts), params


def build_order_by(order_by: Sequence[str] | None) -> sql.Composable:
    """``["priority", "-created_at"]`` -> ORDER BY priority ASC, created_at DESC."""
    if not order_by:
        return sql.SQL("")
    terms = []
    for column in order_by:
        if column.startswith("-"):
            terms.append(sql.SQL("{} DESC").format(sql.Identifier(column[1:])))
        else:
            terms.append(sql.SQL("{} ASC").format(sql.Identifier(column)))
    return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(terms)


class PostgresDataStore:
    """DataStoreClient over psycopg2.

    Each call runs in its own short transaction unless it happens inside
    ``atomic()``. Only tables listed in ``Table`` are reachable.
    """

    def __init__(
        self,
        transaction: Callable[..., AbstractContextManager[PgCursor]] = txn,
    ) -> None:
        self._transaction = transaction
        # cursor of the open atomic() scope, per thread
        self._local = threading.local()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run every query/mutate call in the block in one transaction.

        Commits when the block exits normally and rolls back when it raises.
        A nested ``atomic()`` joins the outer transaction.

        Raises:
            FetchError: If the commit itself fails.
        """
        if getattr(self._local, "cursor", None) is not None:
            yield
            return

        try:
            with self._transaction(dict_rows=True) as cur:
                self._local.cursor = cur
                try:
                    yield
                finally:
                    self._local.cursor = None
        except psycopg2.Error as exc:
            logger.error(
                "data store transaction failed",
                extra={"extra_fields": {"error_type": type(exc).__name__}},
            )
            raise FetchError("transaction failed") from exc

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        cur = getattr(self._local, "cursor", None)
        if cur is not None:
            yield cur
            return
        with self._transaction(dict_rows=True) as cur:
            yield cur

    def query(
        self,
        table: Table | str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table = Table(table)
        where, params = build_where(filters)
        stmt = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table.value))
        stmt = stmt + where + build_order_by(order_by)
        if limit is not None:
            stmt = stmt + sql.SQL(" LIMIT %s")
            params.append(int(limit))

        try:
            with self._cursor() as cur:
                cur.execute(stmt, params)
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as exc:
            logger.error(
                "data store query failed",
                extra={"extra_fields": {"table": table.value, "error_type": type(exc).__name__}},
            )
            raise FetchError(f"query on {table.value} failed", table=table.value) from exc

    def mutate(
        self,
        table: Table | str,
        op: MutationOp | str,
        payload: Mapping[str, Any] | None = None,
        *,
        match: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Insert, update or delete rows and return the first affected row.

        Raises:
            ValueError: If payload/match are missing for the operation.
            FetchError: If the database rejects the statement.
        """
        table = Table(table)
        op = MutationOp(op)
        target = sql.Identifier(table.value)

        if op == MutationOp.INSERT:
            if not payload:
                raise ValueError("insert requires a payload")
            columns = list(payload)
            stmt = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
                target,
                sql.SQL(", ").join(sql.Identifier(c) for c in columns),
                sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            )
            params = [payload[c] for c in columns]
        else:
            if not match:
                raise ValueError(f"{op.value} requires a match filter")
            where, where_params = build_where(match)
            if op == MutationOp.UPDATE:
                if not payload:
                    raise ValueError("update requires a payload")
                columns = list(payload)
                assignments = sql.SQL(", ").join(
                    sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
                )
                stmt = sql.SQL("UPDATE {} SET ").format(target) + assignments
                params = [payload[c] for c in columns]
            else:
                stmt = sql.SQL("DELETE FROM {}").format(target)
                params = []
            stmt = stmt + where + sql.SQL(" RETURNING *")
            params.extend(where_params)

        try:
            with self._cursor() as cur:
                cur.execute(stmt, params)
                row = cur.fetchone()
        except psycopg2.Error as exc:
            logger.error(
                "data store mutation failed",
                extra={
                    "extra_fields": {
                        "table": table.value,
                        "op": op.value,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            raise FetchError(f"{op.value} on {table.value} failed", table=table.value) from exc

        return dict(row) if row is not None else None
