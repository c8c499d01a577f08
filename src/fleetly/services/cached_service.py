"""Base class for services whose reads go through the query cache.

Subclasses describe a query as a blocking callable against the data store;
``_read`` runs it in a worker thread inside ``QueryCache.cached_query`` and
``_write`` runs a mutation and then invalidates the affected entity types.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, ClassVar, Mapping, TypeVar

from fleetly.infra.cache import EntityType, QueryCache
from fleetly.infra.datastore import DataStoreClient

T = TypeVar("T")


class CachedService:
    entity_type: ClassVar[EntityType]
    # Entity types whose cached reads a write on this service also makes stale
    related_entity_types: ClassVar[tuple[EntityType, ...]] = ()

    def __init__(self, store: DataStoreClient, cache: QueryCache) -> None:
        self._store = store
        self._cache = cache

    @property
    def cache(self) -> QueryCache:
        return self._cache

    async def _read(
        self,
        operation: str,
        fetch: Callable[[], T],
        params: Mapping[str, Any] | None = None,
        *,
        entity_type: EntityType | None = None,
        ttl_ms: int | None = None,
        force_fresh: bool = False,
    ) -> T:
        async def fetch_fn() -> T:
            return await asyncio.to_thread(fetch)

        return await self._cache.cached_query(
            entity_type or self.entity_type,
            operation,
            fetch_fn,
            params,
            ttl_ms,
            force_fresh=force_fresh,
        )

    def _prefetch(
        self,
        operation: str,
        fetch: Callable[[], Any],
        params: Mapping[str, Any] | None = None,
        *,
        entity_type: EntityType | None = None,
    ) -> asyncio.Task[Any] | None:
        """Background counterpart of ``_read`` under the same cache key."""

        async def fetch_fn() -> Any:
            return await asyncio.to_thread(fetch)

        return self._cache.prefetch(entity_type or self.entity_type, operation, fetch_fn, params)

    async def _write(
        self,
        mutation: Callable[[], T],
        *,
        invalidates: tuple[EntityType, ...] = (),
    ) -> T:
        """Run *mutation*, then invalidate this service's entity types.

        Nothing is invalidated when the mutation raises.
        """
        result = await asyncio.to_thread(mutation)
        for entity in dict.fromkeys((self.entity_type, *self.related_entity_types, *invalidates)):
            self._cache.invalidate_related(entity)
        return result
