"""Seasonal rate adjustments.

A seasonal rule multiplies the unit price when the whole rental falls
inside the rule's date window. Vehicle-specific rules win over rules that
apply to every vehicle (vehicle_type=None).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from fleetly.domain.pricing import id_sort_key, to_decimal, to_money


@dataclass(frozen=True)
class SeasonalRule:
    id: Any
    name: str
    multiplier: Decimal
    start_date: date
    end_date: date
    vehicle_type: str | None = None
    is_active: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "multiplier", to_decimal(self.multiplier))
        if self.multiplier <= 0:
            raise ValueError("multiplier must be > 0")
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")

    def contains(self, start: date, end: date) -> bool:
        return self.start_date <= start and end <= self.end_date


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def select_seasonal_rule(
    rules: Iterable[SeasonalRule],
    vehicle_type: str,
    start: date | datetime,
    end: date | datetime,
) -> SeasonalRule | None:
    """Return the rule covering the rental period, or None."""
    start_d, end_d = _as_date(start), _as_date(end)

    candidates = [
        r
        for r in rules
        if r.is_active
        and r.vehicle_type in (None, vehicle_type)
        and r.contains(start_d, end_d)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda r: (r.vehicle_type is None, id_sort_key(r.id)))


def apply_seasonal_multiplier(unit_price: Any, rule: SeasonalRule | None) -> Decimal:
    if rule is None:
        return to_money(unit_price)
    return to_money(to_decimal(unit_price) * rule.multiplier)
