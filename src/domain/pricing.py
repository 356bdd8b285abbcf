"""
Fare Engine  (Strategy Pattern for promotions)
==============================================

Formula
-------
Subtotal = (Base + Miles x Per_Mile + Minutes x Per_Minute) x Surge
Total    = max(Subtotal + Booking_Fee, Min_Fare) - Promo_Discount

* **Surge** comes from the request/driver ratio, stepped 1.0 .. 2.0.
* **Booking fee** is added after surge and is never surged.
* The platform keeps ``platform_fee_percent`` of the total; the driver
  earns the remainder.  Both are fixed at request time and never
  recomputed; only the tip changes later.

Complexity: O(1) per quote, O(stops) for the trip estimate.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .distance import route_miles
from .entities import FareBreakdown, Location
from .enums import PromoType, ServiceClass
from .errors import ValidationError


@dataclass(frozen=True)
class ClassRates:
    base_fare: float
    per_mile: float
    per_minute: float
    min_fare: float
    booking_fee: float


RATES: dict[ServiceClass, ClassRates] = {
    ServiceClass.STANDARD: ClassRates(3.00, 1.75, 0.25, 7.00, 2.50),
    ServiceClass.XL: ClassRates(5.00, 2.50, 0.35, 10.00, 2.50),
    ServiceClass.BLACK: ClassRates(8.00, 3.50, 0.50, 15.00, 3.00),
    ServiceClass.GREEN: ClassRates(2.50, 1.50, 0.20, 6.00, 2.00),
}

MINUTES_PER_MILE = 2.5
BASE_MINUTES = 5
MINUTES_PER_STOP = 3


def _cents(amount: float) -> float:
    return round(amount + 1e-9, 2)


# ── Promotion strategies ──────────────────────────────────────────────


class DiscountStrategy(ABC):
    @abstractmethod
    def discount(self, fare_total: float) -> float: ...


class FixedDiscount(DiscountStrategy):
    def __init__(self, amount: float):
        self.amount = amount

    def discount(self, fare_total: float) -> float:
        return min(self.amount, fare_total)


class PercentDiscount(DiscountStrategy):
    def __init__(self, percent: float, max_discount: Optional[float] = None):
        self.percent = percent
        self.max_discount = max_discount

    def discount(self, fare_total: float) -> float:
        amount = fare_total * self.percent / 100
        if self.max_discount is not None:
            amount = min(amount, self.max_discount)
        return min(amount, fare_total)


@dataclass
class Promo:
    code: str
    type: PromoType
    value: float
    max_discount: Optional[float] = None
    min_fare: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    per_user_limit: int = 1
    valid_until: Optional[datetime] = None
    is_active: bool = True

    def strategy(self) -> DiscountStrategy:
        if self.type is PromoType.FIXED:
            return FixedDiscount(self.value)
        return PercentDiscount(self.value, self.max_discount)

    def discount_for(
        self, fare_total: float, user_usages: int, now: datetime
    ) -> float:
        """Return the discount, or raise ``ValidationError`` with the reason."""
        if not self.is_active:
            raise ValidationError("Invalid promo code")
        valid_until = self.valid_until
        if valid_until is not None and valid_until.tzinfo is None:
            valid_until = valid_until.replace(tzinfo=timezone.utc)
        if valid_until is not None and valid_until < now:
            raise ValidationError("Promo code expired")
        if self.usage_limit is not None and self.usage_count >= self.usage_limit:
            raise ValidationError("Promo code usage limit reached")
        if user_usages >= self.per_user_limit:
            raise ValidationError("You have already used this promo code")
        if self.min_fare is not None and fare_total < self.min_fare:
            raise ValidationError(
                f"Minimum fare of {self.min_fare:.2f} required"
            )
        return _cents(self.strategy().discount(fare_total))


# ── Engine facade ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class TripEstimate:
    distance_miles: float
    duration_minutes: int


class PricingEngine:
    """High-level API used by ride requests and estimates."""

    def __init__(self, platform_fee_percent: float = 20.0):
        self.platform_fee_percent = platform_fee_percent

    @staticmethod
    def estimate_trip(
        pickup: Location, dropoff: Location, stops: list[Location] = ()
    ) -> TripEstimate:
        points = [pickup.as_tuple(), *(s.as_tuple() for s in stops), dropoff.as_tuple()]
        distance = route_miles(points)
        duration = math.ceil(distance * MINUTES_PER_MILE + BASE_MINUTES)
        duration += MINUTES_PER_STOP * len(stops)
        return TripEstimate(distance, duration)

    @staticmethod
    def compute_surge(active_requests: int, available_drivers: int) -> float:
        if available_drivers <= 0:
            return 2.0
        ratio = active_requests / available_drivers
        if ratio <= 1:
            return 1.0
        if ratio <= 2:
            return 1.25
        if ratio <= 3:
            return 1.5
        if ratio <= 5:
            return 1.75
        return 2.0

    def quote(
        self,
        distance_miles: float,
        duration_minutes: int,
        service_class: ServiceClass,
        surge_multiplier: float = 1.0,
        promo_discount: float = 0.0,
    ) -> FareBreakdown:
        rates = RATES[service_class]
        distance_fare = distance_miles * rates.per_mile
        time_fare = duration_minutes * rates.per_minute

        subtotal = (rates.base_fare + distance_fare + time_fare) * surge_multiplier
        gross = max(subtotal + rates.booking_fee, rates.min_fare)
        total = _cents(max(0.0, gross - promo_discount))
        platform_fee = _cents(total * self.platform_fee_percent / 100)

        return FareBreakdown(
            base_fare=_cents(rates.base_fare),
            distance_fare=_cents(distance_fare),
            time_fare=_cents(time_fare),
            booking_fee=_cents(rates.booking_fee),
            surge_multiplier=surge_multiplier,
            promo_discount=_cents(min(promo_discount, gross)),
            total_fare=total,
            platform_fee=platform_fee,
            driver_earnings=_cents(total - platform_fee),
        )

    def gross_total(
        self,
        distance_miles: float,
        duration_minutes: int,
        service_class: ServiceClass,
        surge_multiplier: float = 1.0,
    ) -> float:
        """Total before any promotion; promo minimums are checked against it."""
        return self.quote(
            distance_miles, duration_minutes, service_class, surge_multiplier
        ).total_fare
