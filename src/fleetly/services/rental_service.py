"""Cached rental reads and cache-invalidating rental writes."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping

from fleetly.domain.pricing import to_decimal, to_money
from fleetly.infra.cache import EntityType
from fleetly.infra.datastore import MutationOp, Table
from fleetly.services.cached_service import CachedService

ACTIVE_STATUSES = ("Active", "In Progress")

# filter key -> (column, operator)
_RENTAL_FILTERS = {
    "status": ("status", "eq"),
    "vehicle_id": ("vehicle_id", "eq"),
    "customer_id": ("customer_id", "eq"),
    "start_date": ("start_date", "gte"),
    "end_date": ("end_date", "lte"),
}


def rental_filters(filters: Mapping[str, Any] | None) -> dict[str, Any]:
    """Translate caller filters into data-store conditions.

    Unknown keys raise ValueError; falsy values are ignored.
    """
    conditions: dict[str, Any] = {}
    for key, value in (filters or {}).items():
        if key not in _RENTAL_FILTERS:
            raise ValueError(f"unsupported rental filter: {key}")
        if value in (None, ""):
            continue
        column, op = _RENTAL_FILTERS[key]
        conditions[column] = value if op == "eq" else (op, value)
    return conditions


def summarize_rentals(rows: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """Counts per status plus revenue totals for a set of rentals."""
    rows = list(rows)
    revenue = sum((to_decimal(r.get("total_amount") or 0) for r in rows), Decimal(0))
    return {
        "total": len(rows),
        "active": sum(1 for r in rows if r.get("status") == "Active"),
        "completed": sum(1 for r in rows if r.get("status") == "Completed"),
        "cancelled": sum(1 for r in rows if r.get("status") == "Cancelled"),
        "total_revenue": to_money(revenue),
        "average_rental": to_money(revenue / len(rows)) if rows else to_money(0),
    }


class CachedRentalService(CachedService):
    entity_type = EntityType.RENTALS
    related_entity_types = (EntityType.ACTIVE_RENTALS, EntityType.STATISTICS)

    async def get_all_rentals(self, filters: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """Rentals matching *filters*, newest first.

        Supported filters: status, vehicle_id, customer_id, start_date
        (rentals starting on/after) and end_date (ending on/before).
        """
        conditions = rental_filters(filters)
        return await self._read(
            "get_all_rentals",
            lambda: self._store.query(Table.RENTALS, conditions, order_by=["-created_at"]),
            dict(filters or {}),
        )

    async def get_rental_by_id(self, rental_id: Any) -> dict[str, Any] | None:
        def fetch() -> dict[str, Any] | None:
            rows = self._store.query(Table.RENTALS, {"id": rental_id}, limit=1)
            return rows[0] if rows else None

        return await self._read("get_rental_by_id", fetch, {"rental_id": rental_id})

    async def get_active_rentals(self) -> list[dict[str, Any]]:
        return await self._read(
            "get_active_rentals",
            lambda: self._store.query(
                Table.RENTALS,
                {"status": list(ACTIVE_STATUSES)},
                order_by=["start_date"],
            ),
            entity_type=EntityType.ACTIVE_RENTALS,
        )

    async def get_rental_statistics(
        self,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, Any]:
        conditions = rental_filters({"start_date": start_date, "end_date": end_date})

        def fetch() -> dict[str, Any]:
            return summarize_rentals(self._store.query(Table.RENTALS, conditions))

        return await self._read(
            "get_rental_statistics",
            fetch,
            {"start_date": start_date, "end_date": end_date},
            entity_type=EntityType.STATISTICS,
        )

    async def get_rentals_by_vehicle(self, vehicle_id: Any, limit: int = 10) -> list[dict[str, Any]]:
        return await self._read(
            "get_rentals_by_vehicle",
            lambda: self._store.query(
                Table.RENTALS,
                {"vehicle_id": vehicle_id},
                order_by=["-start_date"],
                limit=limit,
            ),
            {"vehicle_id": vehicle_id, "limit": limit},
        )

    async def get_rentals_by_customer(self, customer_id: Any, limit: int = 10) -> list[dict[str, Any]]:
        return await self._read(
            "get_rentals_by_customer",
            lambda: self._store.query(
                Table.RENTALS,
                {"customer_id": customer_id},
                order_by=["-start_date"],
                limit=limit,
            ),
            {"customer_id": customer_id, "limit": limit},
        )

    # ── writes ───────────────────────────────────────────

    async def create_rental(self, rental: Mapping[str, Any]) -> dict[str, Any] | None:
        return await self._write(
            lambda: self._store.mutate(Table.RENTALS, MutationOp.INSERT, dict(rental))
        )

    async def update_rental(self, rental_id: Any, changes: Mapping[str, Any]) -> dict[str, Any] | None:
        return await self._write(
            lambda: self._store.mutate(
                Table.RENTALS, MutationOp.UPDATE, dict(changes), match={"id": rental_id}
            )
        )

    async def delete_rental(self, rental_id: Any) -> bool:
        row = await self._write(
            lambda: self._store.mutate(Table.RENTALS, MutationOp.DELETE, match={"id": rental_id})
        )
        return row is not None
