"""Pricing endpoints.

POST /pricing/quote: price a rental from its date range
GET/POST/PUT/DELETE /pricing/tiers: duration tier management
GET/PUT/DELETE /pricing/promos: promo code management
GET /pricing/cache/stats, POST /pricing/cache/clear: cache operations
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator, model_validator

from fleetly.domain.pricing import (
    Discount,
    DiscountKind,
    DurationTier,
    InvalidRangeError,
    PromoCode,
    RateType,
    normalize_promo_code,
)
from fleetly.infra.cache import QueryCache
from fleetly.infra.datastore import FetchError
from fleetly.infra.time import as_utc
from fleetly.observability.logging import get_logger
from fleetly.services.pricing_service import BasePriceNotFoundError, CachedPricingService

logger = get_logger(__name__)

router = APIRouter(prefix="/pricing", tags=["pricing"])


def get_pricing_service(request: Request) -> CachedPricingService:
    return request.app.state.pricing_service


def get_cache(request: Request) -> QueryCache:
    return request.app.state.cache


def _unavailable(exc: FetchError) -> HTTPException:
    logger.warning(
        "data store unavailable",
        extra={"extra_fields": {"table": exc.table}},
    )
    return HTTPException(status_code=503, detail="pricing data temporarily unavailable")


# ── Schemas ───────────────────────────────────────────────


class QuoteRequest(BaseModel):
    vehicle_type: str = Field(min_length=1)
    rate_type: RateType
    start: datetime
    end: datetime
    promo_code: str | None = None
    transport_pickup: bool = False
    transport_dropoff: bool = False
    unit_price: Decimal | None = Field(default=None, ge=0)


class DiscountFields(BaseModel):
    discount_type: DiscountKind
    discount_value: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def _percent_at_most_100(self) -> DiscountFields:
        if self.discount_type == DiscountKind.PERCENT and self.discount_value > 100:
            raise ValueError("percent discount cannot exceed 100")
        return self


class DurationTierBody(DiscountFields):
    vehicle_type: str = Field(min_length=1)
    rate_type: RateType
    min_qty: Decimal = Field(ge=0)
    max_qty: Decimal | None = None
    priority: int = 100
    is_active: bool = True

    @model_validator(mode="after")
    def _max_not_below_min(self) -> DurationTierBody:
        if self.max_qty is not None and self.max_qty < self.min_qty:
            raise ValueError("max_qty must be >= min_qty")
        return self


class PromoCodeBody(DiscountFields):
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _naive_is_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _window_ordered(self) -> PromoCodeBody:
        if self.valid_from and self.valid_until and self.valid_until < self.valid_from:
            raise ValueError("valid_until must be >= valid_from")
        return self


def _tier_from_body(tier_id: int | None, body: DurationTierBody) -> DurationTier:
    return DurationTier(
        id=tier_id,
        vehicle_type=body.vehicle_type,
        rate_type=body.rate_type,
        min_qty=body.min_qty,
        max_qty=body.max_qty,
        discount=Discount(body.discount_type, body.discount_value),
        priority=body.priority,
        is_active=body.is_active,
    )


def _tier_dict(tier: DurationTier) -> dict:
    return {
        "id": tier.id,
        "vehicle_type": tier.vehicle_type,
        "rate_type": tier.rate_type.value,
        "min_qty": str(tier.min_qty),
        "max_qty": str(tier.max_qty) if tier.max_qty is not None else None,
        "discount_type": tier.discount.kind.value,
        "discount_value": str(tier.discount.value),
        "priority": tier.priority,
        "is_active": tier.is_active,
    }


def _promo_dict(promo: PromoCode) -> dict:
    return {
        "id": promo.id,
        "code": promo.code,
        "discount_type": promo.discount.kind.value,
        "discount_value": str(promo.discount.value),
        "valid_from": promo.valid_from.isoformat() if promo.valid_from else None,
        "valid_until": promo.valid_until.isoformat() if promo.valid_until else None,
        "is_active": promo.is_active,
    }


# ── POST /pricing/quote ───────────────────────────────────


@router.post("/quote")
async def quote(
    body: QuoteRequest,
    service: CachedPricingService = Depends(get_pricing_service),
) -> dict:
    """Price a rental.

    422 when end is not after start, 404 when the vehicle type has no
    base price and none was given, 503 when the data store is down.
    """
    try:
        breakdown = await service.quote(
            body.vehicle_type,
            body.rate_type,
            body.start,
            body.end,
            promo_code=body.promo_code,
            transport_pickup=body.transport_pickup,
            transport_dropoff=body.transport_dropoff,
            unit_price=body.unit_price,
        )
    except InvalidRangeError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except BasePriceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except FetchError as exc:
        raise _unavailable(exc) from exc

    return {**breakdown.to_dict(), "currency": "MAD"}


# ── Duration tiers ────────────────────────────────────────


@router.get("/tiers")
async def list_tiers(
    vehicle_type: str | None = None,
    service: CachedPricingService = Depends(get_pricing_service),
) -> list[dict]:
    try:
        tiers = await service.list_duration_tiers(vehicle_type)
    except FetchError as exc:
        raise _unavailable(exc) from exc
    return [_tier_dict(t) for t in tiers]


@router.post("/tiers", status_code=201)
async def create_tier(
    body: DurationTierBody,
    service: CachedPricingService = Depends(get_pricing_service),
) -> dict:
    try:
        saved = await service.save_duration_tier(_tier_from_body(None, body))
    except FetchError as exc:
        raise _unavailable(exc) from exc
    return _tier_dict(saved)


@router.put("/tiers/{tier_id}")
async def put_tier(
    tier_id: int,
    body: DurationTierBody,
    service: CachedPricingService = Depends(get_pricing_service),
) -> dict:
    try:
        saved = await service.save_duration_tier(_tier_from_body(tier_id, body))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Duration tier not found") from exc
    except FetchError as exc:
        raise _unavailable(exc) from exc
    return _tier_dict(saved)


@router.delete("/tiers/{tier_id}", status_code=204)
async def delete_tier(
    tier_id: int,
    service: CachedPricingService = Depends(get_pricing_service),
) -> None:
    try:
        deleted = await service.delete_duration_tier(tier_id)
    except FetchError as exc:
        raise _unavailable(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Duration tier not found")


# ── Promo codes ───────────────────────────────────────────


@router.get("/promos")
async def list_promos(
    service: CachedPricingService = Depends(get_pricing_service),
) -> list[dict]:
    try:
        promos = await service.list_promo_codes()
    except FetchError as exc:
        raise _unavailable(exc) from exc
    return [_promo_dict(p) for p in promos]


@router.put("/promos/{code}")
async def put_promo(
    code: str,
    body: PromoCodeBody,
    service: CachedPricingService = Depends(get_pricing_service),
) -> dict:
    """Create or replace the promo with this code (matched case-insensitively)."""
    if not code.strip():
        raise HTTPException(status_code=422, detail="code cannot be blank")
    wanted = normalize_promo_code(code)

    promo = PromoCode(
        id=None,
        code=wanted,
        discount=Discount(body.discount_type, body.discount_value),
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        is_active=body.is_active,
    )
    try:
        saved = await service.save_promo_code(promo)
    except FetchError as exc:
        raise _unavailable(exc) from exc
    return _promo_dict(saved)


@router.delete("/promos/{code}", status_code=204)
async def delete_promo(
    code: str,
    service: CachedPricingService = Depends(get_pricing_service),
) -> None:
    try:
        deleted = await service.delete_promo_code(code)
    except FetchError as exc:
        raise _unavailable(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Promo code not found")


# ── Cache ─────────────────────────────────────────────────


@router.get("/cache/stats")
def cache_stats(cache: QueryCache = Depends(get_cache)) -> dict:
    stats = cache.get_stats()
    return {
        "hits": stats.hits,
        "misses": stats.misses,
        "errors": stats.errors,
        "hit_rate": stats.hit_rate,
        "entry_count": stats.entry_count,
        "pending": cache.pending_count(),
    }


@router.post("/cache/clear")
def cache_clear(cache: QueryCache = Depends(get_cache)) -> dict:
    cache.clear()
    return {"status": "cleared"}
