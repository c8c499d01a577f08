"""Postgres connection helpers (psycopg2).

- get_conn(): new connection from DATABASE_URL (+ DB_PASSWORD fallback)
- txn(): commit-or-rollback transaction scope yielding a cursor
"""

import os
from contextlib import contextmanager
from typing import Iterator
from urllib.parse import urlparse

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extras import RealDictCursor


def _dsn_has_password(dsn: str) -> bool:
    if "://" in dsn:
        return bool(urlparse(dsn).password)
    return any(part.startswith("password=") for part in dsn.split())


def get_conn() -> PgConnection:
    """Open a connection using DATABASE_URL.

    DB_PASSWORD is passed separately when the DSN carries no password
    (secret-manager deployments keep it out of the URL).

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")

    password = os.environ.get("DB_PASSWORD")
    if password and not _dsn_has_password(dsn):
        return psycopg2.connect(dsn, password=password)
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None, *, dict_rows: bool = False) -> Iterator[PgCursor]:
    """Run a short transaction.

    Commits on success, rolls back on any exception. A connection opened
    here is closed on exit; a caller-supplied one is left open.

    Args:
        conn: Existing connection, or None to open one.
        dict_rows: Yield a RealDictCursor (rows as dicts).
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    cursor_factory = RealDictCursor if dict_rows else None
    try:
        with conn.cursor(cursor_factory=cursor_factory) as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()
