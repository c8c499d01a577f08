"""Cached pricing service.

Reads base prices, duration tiers, promo codes, transport fees and seasonal
rules through the query cache, writes them straight to the data store and
invalidates the matching entity types afterwards. ``quote`` assembles those
inputs and runs the pricing engine.

Base-price edits that cannot reach the data store are parked in the
key-value store and replayed by ``flush_pending_edits``.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Mapping

from fleetly.domain.pricing import (
    BasePrice,
    Discount,
    DurationTier,
    PricingBreakdown,
    PromoCode,
    RateType,
    TransportFees,
    calculate_rental_pricing,
    normalize_promo_code,
    quantity_for,
)
from fleetly.domain.seasonal import SeasonalRule, apply_seasonal_multiplier, select_seasonal_rule
from fleetly.infra.cache import EntityType, QueryCache
from fleetly.infra.datastore import DataStoreClient, FetchError, MutationOp, Table
from fleetly.infra.kv_store import InMemoryKeyValueStore, KeyValueStore
from fleetly.infra.time import utc_now
from fleetly.observability.logging import get_logger
from fleetly.services.cached_service import CachedService

logger = get_logger(__name__)

PENDING_EDITS_KEY = "fleetly:pending_base_price_edits"


class BasePriceNotFoundError(LookupError):
    """No active base price exists for the vehicle type."""

    def __init__(self, vehicle_type: str):
        self.vehicle_type = vehicle_type
        super().__init__(f"No base price for vehicle type {vehicle_type!r}")


# ── Row mapping ──────────────────────────────────────────


def tier_from_row(row: Mapping[str, Any]) -> DurationTier:
    return DurationTier(
        id=row["id"],
        vehicle_type=row["vehicle_type"],
        rate_type=row["rate_type"],
        min_qty=row["min_qty"],
        max_qty=row.get("max_qty"),
        discount=Discount(row["discount_type"], row["discount_value"]),
        priority=row.get("priority", 100),
        is_active=row.get("is_active", True),
    )


def tier_to_row(tier: DurationTier) -> dict[str, Any]:
    return {
        "vehicle_type": tier.vehicle_type,
        "rate_type": tier.rate_type.value,
        "min_qty": tier.min_qty,
        "max_qty": tier.max_qty,
        "discount_type": tier.discount.kind.value,
        "discount_value": tier.discount.value,
        "priority": tier.priority,
        "is_active": tier.is_active,
    }


def promo_from_row(row: Mapping[str, Any]) -> PromoCode:
    return PromoCode(
        id=row["id"],
        code=row["code"],
        discount=Discount(row["discount_type"], row["discount_value"]),
        valid_from=row.get("valid_from"),
        valid_until=row.get("valid_until"),
        is_active=row.get("is_active", True),
    )


def promo_to_row(promo: PromoCode) -> dict[str, Any]:
    return {
        "code": promo.code,
        "discount_type": promo.discount.kind.value,
        "discount_value": promo.discount.value,
        "valid_from": promo.valid_from,
        "valid_until": promo.valid_until,
        "is_active": promo.is_active,
    }


def seasonal_rule_from_row(row: Mapping[str, Any]) -> SeasonalRule:
    return SeasonalRule(
        id=row["id"],
        name=row["season_name"],
        multiplier=row["multiplier"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        vehicle_type=row.get("vehicle_type"),
        is_active=row.get("is_active", True),
    )


def base_price_from_row(row: Mapping[str, Any]) -> BasePrice:
    return BasePrice(
        vehicle_type=row["vehicle_type"],
        hourly_mad=row["hourly_mad"],
        daily_mad=row["daily_mad"],
    )


# ── Service ──────────────────────────────────────────────


class CachedPricingService(CachedService):
    entity_type = EntityType.PRICING

    def __init__(
        self,
        store: DataStoreClient,
        cache: QueryCache,
        kv_store: KeyValueStore | None = None,
    ) -> None:
        super().__init__(store, cache)
        self._kv = kv_store if kv_store is not None else InMemoryKeyValueStore()

    # ── reads ────────────────────────────────────────────

    async def get_base_price(self, vehicle_type: str) -> BasePrice | None:
        """Active base price for a vehicle type.

        A locally parked edit that has not been replayed yet is newer than
        anything cached or stored, so it is served first.
        """
        parked = self._pending_edits().get(vehicle_type)
        if parked is not None:
            logger.info(
                "serving parked base price edit",
                extra={"extra_fields": {"vehicle_type": vehicle_type}},
            )
            return BasePrice(vehicle_type, parked["hourly_mad"], parked["daily_mad"])

        def fetch() -> BasePrice | None:
            rows = self._store.query(
                Table.BASE_PRICES,
                {"vehicle_type": vehicle_type, "is_active": True},
                order_by=["-updated_at"],
                limit=1,
            )
            return base_price_from_row(rows[0]) if rows else None

        return await self._read(
            "get_base_price",
            fetch,
            {"vehicle_type": vehicle_type},
            entity_type=EntityType.BASE_PRICES,
        )

    async def list_duration_tiers(self, vehicle_type: str | None = None) -> tuple[DurationTier, ...]:
        filters: dict[str, Any] = {"is_active": True}
        if vehicle_type is not None:
            filters["vehicle_type"] = vehicle_type

        def fetch() -> tuple[DurationTier, ...]:
            rows = self._store.query(Table.DURATION_TIERS, filters, order_by=["priority", "id"])
            return tuple(tier_from_row(r) for r in rows)

        return await self._read(
            "list_duration_tiers",
            fetch,
            {"vehicle_type": vehicle_type},
            entity_type=EntityType.DURATION_TIERS,
        )

    async def list_promo_codes(self) -> tuple[PromoCode, ...]:
        return await self._read(
            "list_promo_codes", self._fetch_promo_codes, entity_type=EntityType.PROMO_CODES
        )

    async def get_transport_fees(self) -> TransportFees:
        """Current transport fees; zero fees when none are configured."""
        return await self._read(
            "get_transport_fees", self._fetch_transport_fees, entity_type=EntityType.TRANSPORT_FEES
        )

    async def list_seasonal_rules(self) -> tuple[SeasonalRule, ...]:
        return await self._read(
            "list_seasonal_rules", self._fetch_seasonal_rules, entity_type=EntityType.SEASONAL_PRICING
        )

    def warm(self) -> list[asyncio.Task[Any]]:
        """Start background loads of the lookups every quote shares.

        Keys already cached or being fetched are skipped; failures are
        logged by the cache. Must be called from a running event loop.
        """
        tasks = [
            self._prefetch(
                "list_promo_codes", self._fetch_promo_codes, entity_type=EntityType.PROMO_CODES
            ),
            self._prefetch(
                "get_transport_fees", self._fetch_transport_fees, entity_type=EntityType.TRANSPORT_FEES
            ),
            self._prefetch(
                "list_seasonal_rules", self._fetch_seasonal_rules, entity_type=EntityType.SEASONAL_PRICING
            ),
        ]
        return [t for t in tasks if t is not None]

    # ── writes ───────────────────────────────────────────

    async def save_duration_tier(self, tier: DurationTier) -> DurationTier:
        """Insert the tier when its id is None, update it otherwise."""
        payload = tier_to_row(tier)

        def mutation() -> dict[str, Any] | None:
            if tier.id is None:
                return self._store.mutate(Table.DURATION_TIERS, MutationOp.INSERT, payload)
            return self._store.mutate(
                Table.DURATION_TIERS, MutationOp.UPDATE, payload, match={"id": tier.id}
            )

        row = await self._write(mutation, invalidates=(EntityType.DURATION_TIERS,))
        if row is None:
            raise LookupError(f"Duration tier {tier.id} not found")
        return tier_from_row(row)

    async def delete_duration_tier(self, tier_id: Any) -> bool:
        row = await self._write(
            lambda: self._store.mutate(Table.DURATION_TIERS, MutationOp.DELETE, match={"id": tier_id}),
            invalidates=(EntityType.DURATION_TIERS,),
        )
        return row is not None

    async def save_promo_code(self, promo: PromoCode) -> PromoCode:
        """Update the promo matched by id, or by code when id is None.

        A promo without id whose code is unknown is inserted.
        """
        payload = promo_to_row(promo)
        match = {"id": promo.id} if promo.id is not None else {"code": promo.code}

        def mutation() -> dict[str, Any] | None:
            with self._store.atomic():
                row = self._store.mutate(Table.PROMO_CODES, MutationOp.UPDATE, payload, match=match)
                if row is None and promo.id is None:
                    row = self._store.mutate(Table.PROMO_CODES, MutationOp.INSERT, payload)
                return row

        row = await self._write(mutation, invalidates=(EntityType.PROMO_CODES,))
        if row is None:
            raise LookupError(f"Promo code {promo.code} not found")
        return promo_from_row(row)

    async def delete_promo_code(self, code: str) -> bool:
        wanted = normalize_promo_code(code)
        row = await self._write(
            lambda: self._store.mutate(Table.PROMO_CODES, MutationOp.DELETE, match={"code": wanted}),
            invalidates=(EntityType.PROMO_CODES,),
        )
        return row is not None

    async def update_transport_fees(
        self,
        pickup_fee: Any,
        dropoff_fee: Any,
        currency: str = "MAD",
    ) -> TransportFees:
        """Replace the active transport fee row (old rows are deactivated).

        Deactivation and insert share one transaction, so a failed insert
        leaves the previous row active.
        """
        fees = TransportFees(pickup_fee=pickup_fee, dropoff_fee=dropoff_fee, currency=currency)
        now = utc_now()

        def mutation() -> dict[str, Any] | None:
            with self._store.atomic():
                self._store.mutate(
                    Table.TRANSPORT_FEES,
                    MutationOp.UPDATE,
                    {"is_active": False, "updated_at": now},
                    match={"is_active": True},
                )
                return self._store.mutate(
                    Table.TRANSPORT_FEES,
                    MutationOp.INSERT,
                    {
                        "pickup_fee": fees.pickup_fee,
                        "dropoff_fee": fees.dropoff_fee,
                        "currency": fees.currency,
                        "is_active": True,
                        "updated_at": now,
                    },
                )

        await self._write(mutation, invalidates=(EntityType.TRANSPORT_FEES,))
        return fees

    async def update_base_price(
        self,
        vehicle_type: str,
        hourly_mad: Any,
        daily_mad: Any,
    ) -> dict[str, Any]:
        """Save a base price, parking it locally if the data store is down.

        Returns:
            {"status": "saved", "base_price": BasePrice} or
            {"status": "queued", "base_price": BasePrice} when parked.
        """
        price = BasePrice(vehicle_type, hourly_mad, daily_mad)
        try:
            await self._write(
                lambda: self._upsert_base_price(price),
                invalidates=(EntityType.BASE_PRICES,),
            )
        except FetchError:
            self._park_edit(price)
            self._cache.invalidate(
                EntityType.BASE_PRICES, "get_base_price", {"vehicle_type": vehicle_type}
            )
            self._cache.invalidate_related(EntityType.PRICING)
            logger.warning(
                "data store unreachable, base price edit parked",
                extra={"extra_fields": {"vehicle_type": vehicle_type}},
            )
            return {"status": "queued", "base_price": price}
        return {"status": "saved", "base_price": price}

    async def flush_pending_edits(self) -> int:
        """Replay parked base-price edits; stops at the first failure.

        Returns:
            Number of edits written to the data store.
        """
        pending = self._pending_edits()
        replayed = 0
        for vehicle_type, edit in list(pending.items()):
            price = BasePrice(vehicle_type, edit["hourly_mad"], edit["daily_mad"])
            try:
                await asyncio.to_thread(self._upsert_base_price, price)
            except FetchError:
                logger.warning(
                    "replay of parked base price failed, will retry later",
                    extra={"extra_fields": {"vehicle_type": vehicle_type, "remaining": len(pending)}},
                )
                break
            del pending[vehicle_type]
            self._store_pending_edits(pending)
            replayed += 1

        if replayed:
            self._cache.invalidate_related(EntityType.BASE_PRICES)
            self._cache.invalidate_related(EntityType.PRICING)
        return replayed

    def pending_edit_count(self) -> int:
        return len(self._pending_edits())

    # ── quote ────────────────────────────────────────────

    async def quote(
        self,
        vehicle_type: str,
        rate_type: RateType | str,
        start: datetime,
        end: datetime,
        *,
        promo_code: str | None = None,
        transport_pickup: bool = False,
        transport_dropoff: bool = False,
        unit_price: Any = None,
        now: datetime | None = None,
    ) -> PricingBreakdown:
        """Price a rental from its date range.

        Args:
            vehicle_type: Vehicle model/class.
            rate_type: "hour" or "day".
            start: Rental start.
            end: Rental end.
            promo_code: Optional customer promo code.
            transport_pickup: Pick-up transport requested.
            transport_dropoff: Drop-off transport requested.
            unit_price: Manual unit price; skips the base-price lookup.
            now: Clock for promo validity (default: current UTC time).

        Raises:
            InvalidRangeError: If end <= start (raised before any I/O).
            BasePriceNotFoundError: If no unit price is given or configured.
            FetchError: If the data store fails.
        """
        rate_type = RateType(rate_type)
        quantity = quantity_for(rate_type, start, end)

        base_price, tiers, promos, fees, seasonal_rules = await asyncio.gather(
            self.get_base_price(vehicle_type) if unit_price is None else _none(),
            self.list_duration_tiers(vehicle_type),
            self.list_promo_codes() if promo_code else _empty(),
            self.get_transport_fees() if (transport_pickup or transport_dropoff) else _no_fees(),
            self.list_seasonal_rules(),
        )

        if unit_price is None:
            if base_price is None:
                raise BasePriceNotFoundError(vehicle_type)
            unit_price = base_price.rate_for(rate_type)

        season = select_seasonal_rule(seasonal_rules, vehicle_type, start, end)
        effective_unit_price = apply_seasonal_multiplier(unit_price, season)

        breakdown = calculate_rental_pricing(
            vehicle_type,
            rate_type,
            quantity,
            effective_unit_price,
            promo_code,
            transport_pickup,
            transport_dropoff,
            fees.pickup_fee,
            fees.dropoff_fee,
            active_tiers=tiers,
            active_promos=promos,
            now=now,
        )

        if promo_code and breakdown.applied_promo_code is None:
            logger.info(
                "promo code not applied",
                extra={"extra_fields": {"vehicle_type": vehicle_type}},
            )
        return breakdown

    # ── internals ────────────────────────────────────────

    def _fetch_promo_codes(self) -> tuple[PromoCode, ...]:
        rows = self._store.query(Table.PROMO_CODES, {"is_active": True}, order_by=["code"])
        return tuple(promo_from_row(r) for r in rows)

    def _fetch_transport_fees(self) -> TransportFees:
        rows = self._store.query(
            Table.TRANSPORT_FEES,
            {"is_active": True},
            order_by=["-updated_at"],
            limit=1,
        )
        if not rows:
            return TransportFees()
        row = rows[0]
        return TransportFees(
            pickup_fee=row.get("pickup_fee") or 0,
            dropoff_fee=row.get("dropoff_fee") or 0,
            currency=row.get("currency") or "MAD",
        )

    def _fetch_seasonal_rules(self) -> tuple[SeasonalRule, ...]:
        rows = self._store.query(Table.SEASONAL_RULES, {"is_active": True}, order_by=["start_date"])
        return tuple(seasonal_rule_from_row(r) for r in rows)

    def _upsert_base_price(self, price: BasePrice) -> dict[str, Any] | None:
        payload = {
            "hourly_mad": price.hourly_mad,
            "daily_mad": price.daily_mad,
            "is_active": True,
            "updated_at": utc_now(),
        }
        with self._store.atomic():
            row = self._store.mutate(
                Table.BASE_PRICES,
                MutationOp.UPDATE,
                payload,
                match={"vehicle_type": price.vehicle_type},
            )
            if row is None:
                row = self._store.mutate(
                    Table.BASE_PRICES,
                    MutationOp.INSERT,
                    {"vehicle_type": price.vehicle_type, **payload},
                )
            return row

    def _pending_edits(self) -> dict[str, dict[str, str]]:
        raw = self._kv.get(PENDING_EDITS_KEY)
        return json.loads(raw) if raw else {}

    def _store_pending_edits(self, edits: Mapping[str, Any]) -> None:
        if edits:
            self._kv.set(PENDING_EDITS_KEY, json.dumps(edits, sort_keys=True))
        else:
            self._kv.remove(PENDING_EDITS_KEY)

    def _park_edit(self, price: BasePrice) -> None:
        edits = self._pending_edits()
        edits[price.vehicle_type] = {
            "hourly_mad": str(price.hourly_mad),
            "daily_mad": str(price.daily_mad),
            "queued_at": utc_now().isoformat(),
        }
        self._store_pending_edits(edits)


async def _none() -> None:
    return None


async def _empty() -> tuple[()]:
    return ()


async def _no_fees() -> TransportFees:
    return TransportFees()


