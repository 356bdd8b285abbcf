"""Unit tests for the fare engine and promotions."""

from datetime import datetime, timedelta, timezone

import pytest

from src.domain.entities import Location
from src.domain.enums import PromoType, ServiceClass
from src.domain.errors import ValidationError
from src.domain.pricing import (
    FixedDiscount,
    PercentDiscount,
    PricingEngine,
    Promo,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class TestDiscountStrategies:
    def test_fixed_discount(self):
        assert FixedDiscount(5.0).discount(20.0) == 5.0

    def test_fixed_discount_never_exceeds_fare(self):
        assert FixedDiscount(50.0).discount(20.0) == 20.0

    def test_percent_discount(self):
        assert PercentDiscount(20.0).discount(30.0) == pytest.approx(6.0)

    def test_percent_discount_capped(self):
        assert PercentDiscount(50.0, max_discount=10.0).discount(40.0) == 10.0


class TestPricingEngine:
    def setup_method(self):
        self.engine = PricingEngine(platform_fee_percent=20.0)

    # ── Surge ─────────────────────────────────────────────────────

    def test_compute_surge_normal(self):
        assert self.engine.compute_surge(10, 10) == 1.0

    def test_compute_surge_steps(self):
        assert self.engine.compute_surge(15, 10) == 1.25
        assert self.engine.compute_surge(25, 10) == 1.5
        assert self.engine.compute_surge(45, 10) == 1.75

    def test_compute_surge_capped(self):
        assert self.engine.compute_surge(100, 10) == 2.0

    def test_compute_surge_no_drivers(self):
        assert self.engine.compute_surge(3, 0) == 2.0

    # ── Quotes ────────────────────────────────────────────────────

    def test_standard_quote(self):
        fare = self.engine.quote(10.0, 30, ServiceClass.STANDARD)
        # (3.00 + 10 x 1.75 + 30 x 0.25) + 2.50 booking
        assert fare.distance_fare == 17.5
        assert fare.time_fare == 7.5
        assert fare.total_fare == 30.5
        assert fare.platform_fee == 6.1
        assert fare.driver_earnings == 24.4

    def test_surge_does_not_apply_to_booking_fee(self):
        fare = self.engine.quote(10.0, 30, ServiceClass.STANDARD, surge_multiplier=2.0)
        assert fare.total_fare == 58.5  # 28 x 2 + 2.50
        assert fare.surge_multiplier == 2.0

    def test_minimum_fare(self):
        fare = self.engine.quote(0.1, 1, ServiceClass.BLACK)
        assert fare.total_fare == 15.0

    def test_promo_discount_reduces_total(self):
        fare = self.engine.quote(10.0, 30, ServiceClass.STANDARD, promo_discount=5.0)
        assert fare.total_fare == 25.5
        assert fare.promo_discount == 5.0
        assert fare.platform_fee + fare.driver_earnings == pytest.approx(fare.total_fare)

    def test_class_ordering(self):
        totals = {
            sc: self.engine.quote(5.0, 15, sc).total_fare for sc in ServiceClass
        }
        assert totals[ServiceClass.GREEN] < totals[ServiceClass.STANDARD]
        assert totals[ServiceClass.STANDARD] < totals[ServiceClass.XL] < totals[ServiceClass.BLACK]

    # ── Trip estimate ─────────────────────────────────────────────

    def test_estimate_includes_stops(self):
        pickup = Location(37.7880, -122.4075)
        stop = Location(37.7950, -122.4075)
        dropoff = Location(37.8080, -122.4075)
        direct = self.engine.estimate_trip(pickup, dropoff)
        via = self.engine.estimate_trip(pickup, dropoff, [stop])
        # Collinear stop: same distance, extra dwell time
        assert via.distance_miles == pytest.approx(direct.distance_miles)
        assert via.duration_minutes == direct.duration_minutes + 3


class TestPromo:
    def test_fixed_promo(self):
        promo = Promo(code="WELCOME5", type=PromoType.FIXED, value=5.0)
        assert promo.discount_for(20.0, 0, NOW) == 5.0

    def test_percent_promo_with_cap(self):
        promo = Promo(code="SAVE20", type=PromoType.PERCENT, value=20.0, max_discount=3.0)
        assert promo.discount_for(40.0, 0, NOW) == 3.0

    def test_expired(self):
        promo = Promo(
            code="OLD", type=PromoType.FIXED, value=5.0, valid_until=NOW - timedelta(days=1)
        )
        with pytest.raises(ValidationError, match="expired"):
            promo.discount_for(20.0, 0, NOW)

    def test_naive_expiry_treated_as_utc(self):
        promo = Promo(
            code="SOON",
            type=PromoType.FIXED,
            value=5.0,
            valid_until=(NOW + timedelta(hours=1)).replace(tzinfo=None),
        )
        assert promo.discount_for(20.0, 0, NOW) == 5.0

    def test_global_usage_limit(self):
        promo = Promo(code="X", type=PromoType.FIXED, value=5.0, usage_limit=10, usage_count=10)
        with pytest.raises(ValidationError, match="usage limit"):
            promo.discount_for(20.0, 0, NOW)

    def test_per_user_limit(self):
        promo = Promo(code="X", type=PromoType.FIXED, value=5.0, per_user_limit=1)
        with pytest.raises(ValidationError, match="already used"):
            promo.discount_for(20.0, 1, NOW)

    def test_minimum_fare(self):
        promo = Promo(code="X", type=PromoType.FIXED, value=5.0, min_fare=25.0)
        with pytest.raises(ValidationError, match="Minimum fare"):
            promo.discount_for(20.0, 0, NOW)

    def test_inactive(self):
        promo = Promo(code="X", type=PromoType.FIXED, value=5.0, is_active=False)
        with pytest.raises(ValidationError):
            promo.discount_for(20.0, 0, NOW)
