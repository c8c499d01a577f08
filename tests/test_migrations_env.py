"""Tests for DATABASE_URL handling in migrations/env_helpers.py."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from migrations.env_helpers import get_database_url, keyword_dsn_to_url, parse_keyword_dsn


class TestParseKeywordDsn:
    def test_plain_pairs(self):
        assert parse_keyword_dsn("dbname=db user=u host=h") == {"dbname": "db", "user": "u", "host": "h"}

    def test_quoted_value_with_spaces_and_hash(self):
        assert parse_keyword_dsn("password='p w#1' host=h")["password"] == "p w#1"

    def test_escaped_quote(self):
        assert parse_keyword_dsn(r"password='it\'s'")["password"] == "it's"

    def test_malformed_token(self):
        with pytest.raises(ValueError):
            parse_keyword_dsn("dbname=db garbage")


class TestKeywordDsnToUrl:
    def test_unix_socket_host(self):
        dsn = "dbname=fleetly user=fleet-sa password=s3cret host=/cloudsql/proj:eu-west1:inst"
        assert keyword_dsn_to_url(dsn) == (
            "postgresql+psycopg2://fleet-sa:s3cret@/fleetly"
            "?host=%2Fcloudsql%2Fproj%3Aeu-west1%3Ainst"
        )

    def test_tcp_host_default_port(self):
        assert keyword_dsn_to_url("dbname=db user=u password=p host=myhost") == (
            "postgresql+psycopg2://u:p@myhost:5432/db"
        )

    def test_special_chars_encoded(self):
        result = keyword_dsn_to_url("dbname=db user=u@domain password=p@ss=word host=h port=5433")
        assert result == "postgresql+psycopg2://u%40domain:p%40ss%3Dword@h:5433/db"

    def test_db_password_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert "u:from-env@" in keyword_dsn_to_url("dbname=db user=u host=h")

    def test_dsn_password_wins(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        result = keyword_dsn_to_url("dbname=db user=u password=from-dsn host=h")
        assert "from-dsn" in result
        assert "from-env" not in result

    def test_no_password_at_all(self, monkeypatch):
        monkeypatch.delenv("DB_PASSWORD", raising=False)
        assert keyword_dsn_to_url("dbname=db user=u host=h") == "postgresql+psycopg2://u@h:5432/db"


class TestGetDatabaseUrl:
    def test_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
                get_database_url()

    @pytest.mark.parametrize(
        "url",
        ["postgres://u:p@h/db", "postgresql://u:p@h/db", "postgresql+psycopg2://u:p@h/db"],
    )
    def test_scheme_normalized(self, url):
        with patch.dict(os.environ, {"DATABASE_URL": url}, clear=True):
            assert get_database_url() == "postgresql+psycopg2://u:p@h/db"

    def test_url_db_password_fallback(self):
        env = {"DATABASE_URL": "postgresql://u@h:5432/db", "DB_PASSWORD": "s3cret"}
        with patch.dict(os.environ, env, clear=True):
            assert get_database_url() == "postgresql+psycopg2://u:s3cret@h:5432/db"

    def test_keyword_dsn_converted(self):
        env = {"DATABASE_URL": "dbname=db user=u password=p host=h"}
        with patch.dict(os.environ, env, clear=True):
            assert get_database_url() == "postgresql+psycopg2://u:p@h:5432/db"
