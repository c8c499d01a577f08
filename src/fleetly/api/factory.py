"""FastAPI application factory."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response

from fleetly.infra.cache import QueryCache
from fleetly.infra.datastore import DataStoreClient, PostgresDataStore
from fleetly.infra.kv_store import KeyValueStore, kv_store_from_env
from fleetly.observability.correlation import (
    CORRELATION_ID_HEADER,
    bind_correlation_id,
    new_correlation_id,
    unbind_correlation_id,
)
from fleetly.observability.logging import get_logger
from fleetly.services.pricing_service import CachedPricingService
from fleetly.services.rental_service import CachedRentalService

from .routers import public
from .routes import pricing

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # prefetch failures are logged by the cache and only leave the key cold
    warmed = await asyncio.gather(*app.state.pricing_service.warm(), return_exceptions=True)
    logger.info(
        "pricing cache warmed",
        extra={
            "extra_fields": {
                "scheduled": len(warmed),
                "failed": sum(isinstance(r, Exception) for r in warmed),
            }
        },
    )
    yield


def create_app(
    *,
    store: DataStoreClient | None = None,
    cache: QueryCache | None = None,
    kv_store: KeyValueStore | None = None,
) -> FastAPI:
    """Create the FastAPI app and wire its services.

    Args:
        store: Data store; defaults to Postgres via DATABASE_URL.
        cache: Query cache shared by all services; a new one by default.
        kv_store: Offline edit store; defaults to FLEETLY_KV_PATH or memory.

    Returns:
        Configured FastAPI application.
    """
    store = store if store is not None else PostgresDataStore()
    cache = cache if cache is not None else QueryCache()
    kv_store = kv_store if kv_store is not None else kv_store_from_env()

    app = FastAPI(
        title="Fleetly Pricing",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.cache = cache
    app.state.pricing_service = CachedPricingService(store, cache, kv_store)
    app.state.rental_service = CachedRentalService(store, cache)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or new_correlation_id()
        token = bind_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            unbind_correlation_id(token)

    app.include_router(public.router)
    app.include_router(pricing.router)

    return app
