"""Rental pricing engine.

Pure calculation functions: billable quantity from a date range, duration
tier selection, percent/fixed discounts, promo codes and transport fees.
No I/O here; callers load tiers, promos and fees and pass them in.

Money is ``Decimal`` (MAD), rounded half-up to cents.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable

from fleetly.infra.time import as_utc, utc_now

_CENT = Decimal("0.01")
_ZERO = Decimal("0")
_HALF_HOUR = timedelta(minutes=30)
_DAY = timedelta(days=1)


class InvalidRangeError(ValueError):
    """Raised when a rental's end is not after its start."""

    def __init__(self, start: datetime, end: datetime):
        self.start = start
        self.end = end
        super().__init__(f"Rental end {end.isoformat()} must be after start {start.isoformat()}")


class RateType(str, Enum):
    HOUR = "hour"
    DAY = "day"


class DiscountKind(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


def to_money(value: Any) -> Decimal:
    """Coerce int/float/str/Decimal to a Decimal rounded to cents."""
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps 0.1 as 0.1 instead of its binary expansion
        return Decimal(str(value))
    return Decimal(value)


@dataclass(frozen=True)
class Discount:
    """Either a percentage of the base amount or a fixed amount off."""

    kind: DiscountKind
    value: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", DiscountKind(self.kind))
        object.__setattr__(self, "value", to_decimal(self.value))
        if self.value < 0:
            raise ValueError("discount value must be >= 0")

    @classmethod
    def percent(cls, value: Any) -> Discount:
        return cls(DiscountKind.PERCENT, value)

    @classmethod
    def fixed(cls, value: Any) -> Discount:
        return cls(DiscountKind.FIXED, value)

    def amount_off(self, base: Decimal) -> Decimal:
        """Discount amount for *base*, never more than *base* itself."""
        base = to_decimal(base)
        if base <= 0:
            return _ZERO.quantize(_CENT)
        if self.kind == DiscountKind.PERCENT:
            amount = base * self.value / 100
        else:
            amount = self.value
        return to_money(min(amount, base))


@dataclass(frozen=True)
class DurationTier:
    id: Any
    vehicle_type: str
    rate_type: RateType
    min_qty: Decimal
    max_qty: Decimal | None
    discount: Discount
    priority: int = 100
    is_active: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "rate_type", RateType(self.rate_type))
        object.__setattr__(self, "min_qty", to_decimal(self.min_qty))
        if self.max_qty is not None:
            object.__setattr__(self, "max_qty", to_decimal(self.max_qty))

    def covers(self, quantity: Decimal) -> bool:
        if quantity < self.min_qty:
            return False
        return self.max_qty is None or quantity <= self.max_qty


@dataclass(frozen=True)
class PromoCode:
    id: Any
    code: str
    discount: Discount
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", normalize_promo_code(self.code))
        # naive window bounds are UTC
        if self.valid_from is not None:
            object.__setattr__(self, "valid_from", as_utc(self.valid_from))
        if self.valid_until is not None:
            object.__setattr__(self, "valid_until", as_utc(self.valid_until))


@dataclass(frozen=True)
class BasePrice:
    vehicle_type: str
    hourly_mad: Decimal
    daily_mad: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "hourly_mad", to_money(self.hourly_mad))
        object.__setattr__(self, "daily_mad", to_money(self.daily_mad))

    def rate_for(self, rate_type: RateType | str) -> Decimal:
        if RateType(rate_type) == RateType.HOUR:
            return self.hourly_mad
        return self.daily_mad


@dataclass(frozen=True)
class TransportFees:
    pickup_fee: Decimal = Decimal("0.00")
    dropoff_fee: Decimal = Decimal("0.00")
    currency: str = "MAD"

    def __post_init__(self) -> None:
        object.__setattr__(self, "pickup_fee", to_money(self.pickup_fee or 0))
        object.__setattr__(self, "dropoff_fee", to_money(self.dropoff_fee or 0))


@dataclass(frozen=True)
class PricingBreakdown:
    quantity: Decimal
    unit_price: Decimal
    subtotal: Decimal
    tier_discount_amount: Decimal
    promo_discount_amount: Decimal
    transport_fee: Decimal
    total: Decimal
    applied_tier_id: Any = None
    applied_promo_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "subtotal": str(self.subtotal),
            "tier_discount_amount": str(self.tier_discount_amount),
            "promo_discount_amount": str(self.promo_discount_amount),
            "transport_fee": str(self.transport_fee),
            "total": str(self.total),
            "applied_tier_id": self.applied_tier_id,
            "applied_promo_code": self.applied_promo_code,
        }


def normalize_promo_code(code: str) -> str:
    return code.strip().upper()


def quantity_for(rate_type: RateType | str, start: datetime, end: datetime) -> Decimal:
    """Billable quantity for a rental period.

    Hourly rentals round up to the next half hour; daily rentals round up
    to whole days and never bill less than one day.

    Args:
        rate_type: "hour" or "day".
        start: Rental start.
        end: Rental end.

    Returns:
        Quantity as Decimal (e.g. Decimal("1.5") hours, Decimal(2) days).

    Raises:
        InvalidRangeError: If end <= start.
        ValueError: If rate_type is unknown.
    """
    rate_type = RateType(rate_type)
    if end <= start:
        raise InvalidRangeError(start, end)

    elapsed = end - start

    if rate_type == RateType.HOUR:
        half_hours, remainder = divmod(elapsed, _HALF_HOUR)
        if remainder:
            half_hours += 1
        return Decimal(half_hours) / 2

    days, remainder = divmod(elapsed, _DAY)
    if remainder:
        days += 1
    return Decimal(max(days, 1))


def select_duration_tier(
    vehicle_type: str,
    rate_type: RateType | str,
    quantity: Any,
    active_tiers: Iterable[DurationTier],
) -> DurationTier | None:
    """Pick the applicable tier: lowest priority value wins, then lowest id."""
    rate_type = RateType(rate_type)
    quantity = to_decimal(quantity)

    matches = [
        t
        for t in active_tiers
        if t.is_active
        and t.vehicle_type == vehicle_type
        and t.rate_type == rate_type
        and t.covers(quantity)
    ]
    if not matches:
        return None
    return min(matches, key=lambda t: (t.priority, id_sort_key(t.id)))


def id_sort_key(value: Any) -> tuple[int, Any]:
    # ints sort before strings so mixed id types never raise TypeError
    if isinstance(value, int):
        return (0, value)
    return (1, str(value))


def apply_tier_discount(subtotal: Any, tier: DurationTier) -> Decimal:
    """Discount amount granted by *tier* on *subtotal* (not the reduced total)."""
    return tier.discount.amount_off(to_decimal(subtotal))


def validate_promo(promo: PromoCode, now: datetime) -> bool:
    """True when *promo* is active and *now* lies inside its validity window.

    A naive *now* is taken as UTC, like the window bounds.
    """
    if not promo.is_active:
        return False
    now = as_utc(now)
    if promo.valid_from is not None and now < promo.valid_from:
        return False
    if promo.valid_until is not None and now > promo.valid_until:
        return False
    return True


def find_promo(code: str | None, promos: Iterable[PromoCode]) -> PromoCode | None:
    """Case-insensitive promo lookup; blank or unknown codes yield None."""
    if not code or not code.strip():
        return None
    wanted = normalize_promo_code(code)
    for promo in promos:
        if promo.code == wanted:
            return promo
    return None


def apply_promo_discount(amount_after_tier: Any, promo: PromoCode) -> Decimal:
    """Promo discount on what remains after the tier discount."""
    return promo.discount.amount_off(to_decimal(amount_after_tier))


def calculate_rental_pricing(
    vehicle_type: str,
    rate_type: RateType | str,
    quantity: Any,
    unit_price: Any,
    promo_code: str | None = None,
    transport_pickup: bool = False,
    transport_dropoff: bool = False,
    pickup_fee_mad: Any = 0,
    dropoff_fee_mad: Any = 0,
    active_tiers: Iterable[DurationTier] = (),
    active_promos: Iterable[PromoCode] = (),
    now: datetime | None = None,
) -> PricingBreakdown:
    """Compute the full price breakdown for a rental.

    Discounts stack sequentially: the tier discount comes off the subtotal,
    the promo discount comes off what is left. An unknown, inactive or
    expired promo code simply grants no discount.

    Args:
        vehicle_type: Vehicle model/class (e.g. "AT5").
        rate_type: "hour" or "day".
        quantity: Billable quantity (see quantity_for).
        unit_price: Price per hour/day in MAD.
        promo_code: Optional code typed by the customer.
        transport_pickup: Whether pick-up transport was requested.
        transport_dropoff: Whether drop-off transport was requested.
        pickup_fee_mad: Pick-up transport fee.
        dropoff_fee_mad: Drop-off transport fee.
        active_tiers: Candidate duration tiers.
        active_promos: Known promo codes.
        now: Evaluation time for promo validity (default: current UTC time).

    Returns:
        PricingBreakdown with a non-negative total.
    """
    rate_type = RateType(rate_type)
    quantity = to_decimal(quantity)
    unit_price = to_money(unit_price)
    subtotal = to_money(unit_price * quantity)

    tier = select_duration_tier(vehicle_type, rate_type, quantity, active_tiers)
    tier_discount = apply_tier_discount(subtotal, tier) if tier else to_money(0)
    after_tier = subtotal - tier_discount

    promo = find_promo(promo_code, active_promos)
    if promo is not None and not validate_promo(promo, now or utc_now()):
        promo = None
    promo_discount = apply_promo_discount(after_tier, promo) if promo else to_money(0)
    after_promo = after_tier - promo_discount

    transport_fee = to_money(0)
    if transport_pickup:
        transport_fee += to_money(pickup_fee_mad or 0)
    if transport_dropoff:
        transport_fee += to_money(dropoff_fee_mad or 0)

    total = max(after_promo + transport_fee, to_money(0))

    return PricingBreakdown(
        quantity=quantity,
        unit_price=unit_price,
        subtotal=subtotal,
        tier_discount_amount=tier_discount,
        promo_discount_amount=promo_discount,
        transport_fee=transport_fee,
        total=total,
        applied_tier_id=tier.id if tier else None,
        applied_promo_code=promo.code if promo else None,
    )
