"""Pricing engine tests: quantity rounding, tiers, discounts, promos, totals."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fleetly.domain.pricing import (
    BasePrice,
    Discount,
    DiscountKind,
    DurationTier,
    InvalidRangeError,
    PromoCode,
    RateType,
    TransportFees,
    apply_promo_discount,
    apply_tier_discount,
    calculate_rental_pricing,
    find_promo,
    quantity_for,
    select_duration_tier,
    validate_promo,
)

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _tier(id, *, vehicle_type="AT5", rate_type="hour", min_qty=0, max_qty=None,
          discount=None, priority=100, is_active=True) -> DurationTier:
    return DurationTier(
        id=id,
        vehicle_type=vehicle_type,
        rate_type=rate_type,
        min_qty=min_qty,
        max_qty=max_qty,
        discount=discount or Discount.percent(10),
        priority=priority,
        is_active=is_active,
    )


def _promo(code="SUMMER", discount=None, **kwargs) -> PromoCode:
    return PromoCode(id=1, code=code, discount=discount or Discount.fixed(50), **kwargs)


class TestQuantityFor:
    def test_hour_rounds_up_to_half_hour(self):
        assert quantity_for("hour", T0, T0 + timedelta(minutes=95)) == Decimal("2")

    def test_hour_exact_half_hour_not_rounded(self):
        assert quantity_for("hour", T0, T0 + timedelta(minutes=90)) == Decimal("1.5")

    def test_hour_one_second_over_bills_next_half_hour(self):
        assert quantity_for("hour", T0, T0 + timedelta(hours=1, seconds=1)) == Decimal("1.5")

    def test_day_minimum_one(self):
        assert quantity_for("day", T0, T0 + timedelta(hours=2)) == Decimal("1")

    def test_day_rounds_up(self):
        assert quantity_for("day", T0, T0 + timedelta(hours=25)) == Decimal("2")

    def test_day_exact_days(self):
        assert quantity_for(RateType.DAY, T0, T0 + timedelta(days=2)) == Decimal("2")

    def test_end_equal_start_raises(self):
        with pytest.raises(InvalidRangeError) as exc_info:
            quantity_for("hour", T0, T0)
        assert exc_info.value.start == T0

    def test_end_before_start_raises(self):
        with pytest.raises(InvalidRangeError):
            quantity_for("day", T0, T0 - timedelta(minutes=1))

    def test_invalid_range_is_value_error(self):
        with pytest.raises(ValueError):
            quantity_for("day", T0, T0)

    def test_unknown_rate_type(self):
        with pytest.raises(ValueError):
            quantity_for("week", T0, T0 + timedelta(days=7))


class TestSelectDurationTier:
    def test_lowest_priority_wins(self):
        tiers = [_tier(1, priority=50), _tier(2, priority=10)]
        assert select_duration_tier("AT5", "hour", 5, tiers).id == 2

    def test_equal_priority_lowest_id_wins(self):
        tiers = [_tier(7, priority=10), _tier(3, priority=10), _tier(12, priority=10)]
        assert select_duration_tier("AT5", "hour", 5, tiers).id == 3

    def test_numeric_ids_not_compared_as_text(self):
        tiers = [_tier(10, priority=1), _tier(9, priority=1)]
        assert select_duration_tier("AT5", "hour", 5, tiers).id == 9

    def test_filters_vehicle_and_rate_type(self):
        tiers = [
            _tier(1, vehicle_type="SEGWAY"),
            _tier(2, rate_type="day"),
        ]
        assert select_duration_tier("AT5", "hour", 5, tiers) is None

    def test_quantity_bounds_inclusive(self):
        tier = _tier(1, min_qty=2, max_qty=4)
        assert select_duration_tier("AT5", "hour", 2, [tier]) is tier
        assert select_duration_tier("AT5", "hour", 4, [tier]) is tier
        assert select_duration_tier("AT5", "hour", Decimal("4.5"), [tier]) is None
        assert select_duration_tier("AT5", "hour", Decimal("1.5"), [tier]) is None

    def test_open_ended_max(self):
        tier = _tier(1, min_qty=3, max_qty=None)
        assert select_duration_tier("AT5", "hour", 1000, [tier]) is tier

    def test_inactive_tiers_ignored(self):
        assert select_duration_tier("AT5", "hour", 5, [_tier(1, is_active=False)]) is None

    def test_no_tiers(self):
        assert select_duration_tier("AT5", "hour", 5, []) is None


class TestDiscounts:
    def test_percent_tier_discount(self):
        assert apply_tier_discount(Decimal("1600"), _tier(1)) == Decimal("160.00")

    def test_fixed_tier_discount_capped_at_subtotal(self):
        tier = _tier(1, discount=Discount.fixed(500))
        assert apply_tier_discount(Decimal("300"), tier) == Decimal("300.00")

    def test_percent_rounds_half_up_to_cents(self):
        tier = _tier(1, discount=Discount.percent("12.5"))
        # 12.5% of 0.20 = 0.025
        assert apply_tier_discount(Decimal("0.20"), tier) == Decimal("0.03")

    def test_promo_discount_on_zero_is_zero(self):
        assert apply_promo_discount(Decimal("0"), _promo()) == Decimal("0.00")

    def test_negative_discount_rejected(self):
        with pytest.raises(ValueError):
            Discount.fixed(-1)

    def test_kind_coerced_from_string(self):
        assert Discount("percent", "10").kind is DiscountKind.PERCENT
        assert Discount("fixed", 5.5).value == Decimal("5.5")


class TestPromos:
    def test_valid_inside_window(self):
        promo = _promo(valid_from=NOW - timedelta(days=1), valid_until=NOW + timedelta(days=1))
        assert validate_promo(promo, NOW) is True

    def test_no_window_is_valid(self):
        assert validate_promo(_promo(), NOW) is True

    def test_inactive(self):
        assert validate_promo(_promo(is_active=False), NOW) is False

    def test_expired(self):
        assert validate_promo(_promo(valid_until=NOW - timedelta(seconds=1)), NOW) is False

    def test_not_yet_valid(self):
        assert validate_promo(_promo(valid_from=NOW + timedelta(seconds=1)), NOW) is False

    def test_naive_window_read_as_utc(self):
        promo = _promo(valid_from=datetime(2024, 5, 1), valid_until=datetime(2024, 7, 1))
        assert promo.valid_until.tzinfo is timezone.utc
        assert validate_promo(promo, NOW) is True

    def test_naive_now_against_aware_window(self):
        promo = _promo(valid_until=NOW - timedelta(hours=1))
        assert validate_promo(promo, datetime(2024, 6, 1, 12, 0)) is False

    def test_code_normalized(self):
        assert _promo(code="  summer ").code == "SUMMER"

    def test_find_is_case_insensitive(self):
        promo = _promo()
        assert find_promo("summer", [promo]) is promo

    def test_find_blank_or_unknown(self):
        assert find_promo("", [_promo()]) is None
        assert find_promo("   ", [_promo()]) is None
        assert find_promo(None, [_promo()]) is None
        assert find_promo("WINTER", [_promo()]) is None


class TestCalculateRentalPricing:
    def test_discounts_stack_sequentially(self):
        tier = _tier(1, min_qty=1, discount=Discount.percent(10))
        result = calculate_rental_pricing(
            "AT5", "hour", 10, 100, "SUMMER",
            active_tiers=[tier],
            active_promos=[_promo(discount=Discount.fixed(50))],
            now=NOW,
        )
        assert result.subtotal == Decimal("1000.00")
        assert result.tier_discount_amount == Decimal("100.00")
        assert result.promo_discount_amount == Decimal("50.00")
        assert result.transport_fee == Decimal("0.00")
        assert result.total == Decimal("850.00")
        assert result.applied_tier_id == 1
        assert result.applied_promo_code == "SUMMER"

    def test_total_never_negative(self):
        tier = _tier(1, discount=Discount.percent(100))
        result = calculate_rental_pricing(
            "AT5", "hour", 1, 30, "SUMMER",
            active_tiers=[tier],
            active_promos=[_promo(discount=Discount.fixed(50))],
            now=NOW,
        )
        assert result.tier_discount_amount == Decimal("30.00")
        assert result.promo_discount_amount == Decimal("0.00")
        assert result.total == Decimal("0.00")

    def test_expired_promo_grants_nothing(self):
        promo = _promo(valid_until=NOW - timedelta(days=1))
        result = calculate_rental_pricing(
            "AT5", "hour", 2, 100, "SUMMER", active_promos=[promo], now=NOW,
        )
        assert result.promo_discount_amount == Decimal("0.00")
        assert result.applied_promo_code is None
        assert result.total == Decimal("200.00")

    def test_unknown_promo_is_not_an_error(self):
        result = calculate_rental_pricing("AT5", "hour", 2, 100, "NOPE", now=NOW)
        assert result.total == Decimal("200.00")

    def test_end_to_end_scenario(self):
        quantity = quantity_for("day", datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 3, 10, 0))
        tier = _tier(1, rate_type="day", min_qty=2, discount=Discount.percent(10))
        result = calculate_rental_pricing(
            "AT5", "day", quantity, 800,
            transport_pickup=True,
            pickup_fee_mad=50,
            dropoff_fee_mad=70,
            active_tiers=[tier],
            now=NOW,
        )
        assert quantity == Decimal("2")
        assert result.subtotal == Decimal("1600.00")
        assert result.tier_discount_amount == Decimal("160.00")
        assert result.transport_fee == Decimal("50.00")
        assert result.total == Decimal("1490.00")

    def test_both_transport_fees(self):
        result = calculate_rental_pricing(
            "AT5", "hour", 1, 100, None, True, True, 50, 70, now=NOW,
        )
        assert result.transport_fee == Decimal("120.00")
        assert result.total == Decimal("220.00")

    def test_transport_not_requested(self):
        result = calculate_rental_pricing(
            "AT5", "hour", 1, 100, None, False, False, 50, 70, now=NOW,
        )
        assert result.transport_fee == Decimal("0.00")

    def test_idempotent(self):
        tier = _tier(1, discount=Discount.percent(15))
        args = ("AT5", "hour", Decimal("2.5"), "99.99", None, True, False, 20, 0)
        first = calculate_rental_pricing(*args, active_tiers=[tier], now=NOW)
        second = calculate_rental_pricing(*args, active_tiers=[tier], now=NOW)
        assert first == second

    def test_float_inputs_do_not_leak_binary_noise(self):
        result = calculate_rental_pricing("AT5", "hour", 3, 0.1, now=NOW)
        assert result.subtotal == Decimal("0.30")

    def test_naive_expired_promo_with_default_clock(self):
        promo = PromoCode(id=7, code="OLD", discount=Discount.fixed(100), valid_until=datetime(2020, 1, 1))
        result = calculate_rental_pricing("AT5", "day", 2, 800, "OLD", active_promos=[promo])
        assert result.promo_discount_amount == Decimal("0.00")
        assert result.applied_promo_code is None
        assert result.total == Decimal("1600.00")

    def test_tiers_and_promos_accepted_positionally(self):
        tier = _tier(1, rate_type="day", min_qty=2, discount=Discount.percent(10))
        promo = _promo(discount=Discount.fixed(40))
        result = calculate_rental_pricing(
            "AT5", "day", 2, 800, "SUMMER", False, False, 0, 0, [tier], [promo], NOW,
        )
        assert result.applied_tier_id == 1
        assert result.total == Decimal("1400.00")

    def test_to_dict_serializes_money_as_strings(self):
        result = calculate_rental_pricing("AT5", "hour", 1, 100, now=NOW)
        data = result.to_dict()
        assert data["total"] == "100.00"
        assert data["applied_tier_id"] is None


class TestValueObjects:
    def test_base_price_rate_for(self):
        price = BasePrice("AT5", "120", 800)
        assert price.rate_for("hour") == Decimal("120.00")
        assert price.rate_for(RateType.DAY) == Decimal("800.00")

    def test_transport_fees_default_to_zero(self):
        fees = TransportFees(pickup_fee=None, dropoff_fee=None)
        assert fees.pickup_fee == Decimal("0.00")
        assert fees.dropoff_fee == Decimal("0.00")
        assert fees.currency == "MAD"
