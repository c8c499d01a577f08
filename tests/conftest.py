"""Shared pytest fixtures for Fleetly tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from fleetly.infra.cache import QueryCache  # noqa: E402
from fleetly.infra.kv_store import InMemoryKeyValueStore  # noqa: E402

from helpers import FakeClock, FakeDataStore  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> QueryCache:
    """Fresh cache per test, driven by the fake clock."""
    return QueryCache(clock=clock)


@pytest.fixture
def store() -> FakeDataStore:
    return FakeDataStore()


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture(autouse=True)
def _isolated_kv_path(monkeypatch):
    """Never let a shell-level FLEETLY_KV_PATH leak into tests."""
    monkeypatch.delenv("FLEETLY_KV_PATH", raising=False)
