"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be imported without an Alembic context.
Accepts the same DATABASE_URL / DB_PASSWORD pair as ``fleetly.infra.db``.
"""

from __future__ import annotations

import os
import shlex
from urllib.parse import quote_plus, urlsplit, urlunsplit

_DRIVER_SCHEME = "postgresql+psycopg2"


def parse_keyword_dsn(dsn: str) -> dict[str, str]:
    """Split a libpq ``key=value`` DSN; single-quoted values may hold spaces."""
    lexer = shlex.shlex(dsn, posix=True)
    lexer.whitespace_split = True
    lexer.quotes = "'"
    lexer.escape = "\\"
    lexer.escapedquotes = "'"
    lexer.commenters = ""
    pairs: dict[str, str] = {}
    for token in lexer:
        key, sep, value = token.partition("=")
        if not sep:
            raise ValueError(f"malformed DSN token: {key!r}")
        pairs[key] = value
    return pairs


def keyword_dsn_to_url(dsn: str) -> str:
    """Convert a ``key=value`` DSN into a SQLAlchemy URL.

    A host starting with "/" is a unix socket directory and goes into the
    query string.
    """
    parts = parse_keyword_dsn(dsn)
    password = parts.get("password") or os.environ.get("DB_PASSWORD", "")

    user = quote_plus(parts.get("user", ""))
    credentials = f"{user}:{quote_plus(password)}" if password else user
    dbname = quote_plus(parts.get("dbname", ""))
    host = parts.get("host", "localhost")

    if host.startswith("/"):
        return f"{_DRIVER_SCHEME}://{credentials}@/{dbname}?host={quote_plus(host)}"
    port = parts.get("port", "5432")
    return f"{_DRIVER_SCHEME}://{credentials}@{host}:{port}/{dbname}"


def normalize_url(url: str) -> str:
    """Force the psycopg2 driver and fill in DB_PASSWORD when the URL has none."""
    scheme, netloc, path, query, fragment = urlsplit(url)
    if scheme in ("postgres", "postgresql"):
        scheme = _DRIVER_SCHEME

    db_password = os.environ.get("DB_PASSWORD", "")
    userinfo, at, hostport = netloc.rpartition("@")
    if db_password and at and ":" not in userinfo:
        netloc = f"{userinfo}:{quote_plus(db_password)}@{hostport}"

    return urlunsplit((scheme, netloc, path, query, fragment))


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" in url:
        return normalize_url(url)
    return keyword_dsn_to_url(url)
