"""Process-local query cache with per-entity TTL and request deduplication.

Every read-heavy service funnels its fetches through ``QueryCache.cached_query``:

- concurrent callers asking for the same key share one in-flight fetch;
- successful results are kept for the entity type's TTL and expire lazily
  on read (there is no background sweep);
- failures are never cached and reach every caller that joined the fetch;
- writes call ``invalidate_related`` so the next read goes to the store.

The cache is meant to live on one event loop. Its maps are plain dicts
mutated only between suspension points, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from fleetly.infra.time import epoch_ms
from fleetly.observability.logging import describe_params, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

FetchFn = Callable[[], Awaitable[T]]

DEFAULT_TTL_MS = 30_000

_MINUTE_MS = 60_000


class EntityType(str, Enum):
    """Tags used for TTL lookup and bulk invalidation."""

    PRICING = "pricing"
    BASE_PRICES = "base_prices"
    DURATION_TIERS = "duration_tiers"
    PROMO_CODES = "promo_codes"
    SEASONAL_PRICING = "seasonal_pricing"
    TRANSPORT_FEES = "transport_fees"
    RENTALS = "rentals"
    ACTIVE_RENTALS = "active_rentals"
    STATISTICS = "statistics"
    VEHICLES = "vehicles"
    SETTINGS = "settings"
    BOOKINGS = "bookings"


# Entity types missing here fall back to DEFAULT_TTL_MS.
ENTITY_TTL_MS: Mapping[EntityType, int] = MappingProxyType(
    {
        EntityType.PRICING: 15 * _MINUTE_MS,
        EntityType.BASE_PRICES: 5 * _MINUTE_MS,
        EntityType.DURATION_TIERS: 30 * _MINUTE_MS,
        EntityType.PROMO_CODES: 15 * _MINUTE_MS,
        EntityType.SEASONAL_PRICING: 60 * _MINUTE_MS,
        EntityType.TRANSPORT_FEES: 30_000,
        EntityType.RENTALS: 2 * _MINUTE_MS,
        EntityType.ACTIVE_RENTALS: 1 * _MINUTE_MS,
        EntityType.STATISTICS: 10 * _MINUTE_MS,
        EntityType.VEHICLES: 5 * _MINUTE_MS,
        EntityType.SETTINGS: 5 * _MINUTE_MS,
    }
)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    entity_type: EntityType
    data: Any
    timestamp_ms: int
    ttl_ms: int

    def is_fresh(self, now_ms: int) -> bool:
        return now_ms - self.timestamp_ms < self.ttl_ms


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    errors: int
    hit_rate: float
    entry_count: int


def generate_cache_key(
    entity_type: EntityType | str,
    operation_name: str,
    params: Mapping[str, Any] | None = None,
) -> str:
    """Build a key that does not depend on the insertion order of *params*.

    Raises:
        ValueError: If entity_type is not a known EntityType.
    """
    entity = EntityType(entity_type)
    serialized = json.dumps(
        params or {},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return f"{entity.value}:{operation_name}:{serialized}"


class QueryCache:
    """In-memory cache of async query results.

    Construct one per process (or per test) and inject it into the services
    that need it. ``clear()`` at session boundaries drops everything.
    """

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or epoch_ms
        self._entries: dict[str, CacheEntry] = {}
        self._pending: dict[str, asyncio.Task[Any]] = {}
        # Bumped by clear(); fetches started under an older generation
        # must not write their result back.
        self._generation = 0
        self._hits = 0
        self._misses = 0
        self._errors = 0

    def ttl_for(self, entity_type: EntityType | str) -> int:
        return ENTITY_TTL_MS.get(EntityType(entity_type), DEFAULT_TTL_MS)

    async def cached_query(
        self,
        entity_type: EntityType | str,
        operation_name: str,
        fetch_fn: FetchFn[T],
        params: Mapping[str, Any] | None = None,
        ttl_override_ms: int | None = None,
        *,
        force_fresh: bool = False,
    ) -> T:
        """Return cached data for the query, fetching it at most once.

        Args:
            entity_type: Entity tag (TTL lookup and bulk invalidation).
            operation_name: Distinguishes several queries on one entity type.
            fetch_fn: Zero-argument callable returning an awaitable result.
            params: Query parameters; part of the key.
            ttl_override_ms: TTL for this result instead of the entity default.
            force_fresh: Skip a cached entry (an in-flight fetch is still joined).

        Returns:
            The fetched or cached result.

        Raises:
            Whatever fetch_fn raises, unchanged, to every joined caller.
        """
        entity = EntityType(entity_type)
        key = generate_cache_key(entity, operation_name, params)

        pending = self._pending.get(key)
        if pending is not None:
            self._hits += 1
            return await asyncio.shield(pending)

        if not force_fresh:
            entry = self._lookup(key)
            if entry is not None:
                self._hits += 1
                return entry.data

        self._misses += 1
        task = self._start_fetch(key, entity, operation_name, params, fetch_fn, ttl_override_ms)
        # shield: a caller giving up must not cancel the fetch other callers share
        return await asyncio.shield(task)

    def prefetch(
        self,
        entity_type: EntityType | str,
        operation_name: str,
        fetch_fn: FetchFn[Any],
        params: Mapping[str, Any] | None = None,
        ttl_override_ms: int | None = None,
    ) -> asyncio.Task[Any] | None:
        """Warm the cache in the background.

        Does nothing when the key is already cached or being fetched.
        Failures are logged, not raised. Must be called from a running loop.

        Returns:
            The background task, or None if nothing was scheduled.
        """
        entity = EntityType(entity_type)
        key = generate_cache_key(entity, operation_name, params)
        if key in self._pending or self._lookup(key) is not None:
            return None

        self._misses += 1
        task = self._start_fetch(key, entity, operation_name, params, fetch_fn, ttl_override_ms)
        task.add_done_callback(_consume_prefetch_result)
        return task

    def invalidate_related(self, entity_type: EntityType | str) -> int:
        """Drop every cached result of *entity_type*.

        In-flight fetches are left alone and may still store their result.

        Returns:
            Number of entries removed.
        """
        entity = EntityType(entity_type)
        stale = [key for key, entry in self._entries.items() if entry.entity_type is entity]
        for key in stale:
            del self._entries[key]

        logger.info(
            "cache invalidated",
            extra={"extra_fields": {"entity_type": entity.value, "removed": len(stale)}},
        )
        return len(stale)

    def invalidate(
        self,
        entity_type: EntityType | str,
        operation_name: str,
        params: Mapping[str, Any] | None = None,
    ) -> bool:
        """Drop a single cached result. Returns True if one was present."""
        key = generate_cache_key(entity_type, operation_name, params)
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop all entries and forget in-flight fetches."""
        self._entries.clear()
        self._pending.clear()
        self._generation += 1
        logger.info("cache cleared", extra={"extra_fields": {"generation": self._generation}})

    def get_stats(self) -> CacheStats:
        total = self._hits + self._misses
        hit_rate = round(self._hits / total * 100, 2) if total else 0.0
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            errors=self._errors,
            hit_rate=hit_rate,
            entry_count=len(self._entries),
        )

    def reset_stats(self) -> None:
        self._hits = self._misses = self._errors = 0

    def pending_count(self) -> int:
        return len(self._pending)

    # ── internals ────────────────────────────────────────

    def _lookup(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            return None
        return entry

    def _start_fetch(
        self,
        key: str,
        entity: EntityType,
        operation_name: str,
        params: Mapping[str, Any] | None,
        fetch_fn: FetchFn[Any],
        ttl_override_ms: int | None,
    ) -> asyncio.Task[Any]:
        loop = asyncio.get_running_loop()
        task = loop.create_task(
            self._fetch(key, entity, operation_name, params, fetch_fn, ttl_override_ms, self._generation)
        )
        self._pending[key] = task
        return task

    async def _fetch(
        self,
        key: str,
        entity: EntityType,
        operation_name: str,
        params: Mapping[str, Any] | None,
        fetch_fn: FetchFn[Any],
        ttl_override_ms: int | None,
        generation: int,
    ) -> Any:
        try:
            result = await fetch_fn()
        except Exception as exc:
            self._errors += 1
            logger.warning(
                "cache fetch failed",
                extra={
                    "extra_fields": {
                        "entity_type": entity.value,
                        "operation": operation_name,
                        "params": describe_params(params),
                        "error_type": type(exc).__name__,
                    }
                },
            )
            raise
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]

        if generation == self._generation:
            ttl_ms = ttl_override_ms if ttl_override_ms is not None else self.ttl_for(entity)
            self._entries[key] = CacheEntry(
                key=key,
                entity_type=entity,
                data=result,
                timestamp_ms=self._clock(),
                ttl_ms=ttl_ms,
            )
        return result


def _consume_prefetch_result(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info(
            "prefetch failed",
            extra={"extra_fields": {"error_type": type(exc).__name__}},
        )
