"""
Fare Calculator - distance-tiered tariff

A flat base fare covers the first 2 km. Beyond that each tier's per-km rate
applies only to the part of the trip inside the tier, and the commission rate
of the tier holding the trip's end applies to the whole (rounded) fare.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .core.exceptions import ValidationError
from .utils import round_half_up

BASE_FARE = 30
BASE_FARE_KM = 2.0
BASE_COMMISSION_RATE = 0.15


@dataclass(frozen=True)
class Tier:
    start_km: float
    end_km: Optional[float]  # None = open-ended
    rate_per_km: float
    commission_rate: float

    @property
    def label(self) -> str:
        if self.end_km is None:
            return f"{self.start_km:g}+ km"
        return f"{self.start_km:g}-{self.end_km:g} km"


TIERS: List[Tier] = [
    Tier(2, 8, 5.5, 0.15),
    Tier(8, 15, 6.0, 0.15),
    Tier(15, 25, 6.5, 0.12),
    Tier(25, 40, 7.0, 0.12),
    Tier(40, 65, 6.0, 0.10),
    Tier(65, None, 6.0, 0.10),
]


@dataclass(frozen=True)
class Fare:
    total_price: int
    commission: int
    rider_earnings: int


@dataclass(frozen=True)
class TierSegment:
    range: str
    rate_per_km: float
    distance_km: float
    fare: float


@dataclass
class FareBreakdown:
    distance_km: float
    base_fare: int
    distance_fare: int
    commission_rate: int  # percent
    fare: Fare
    tiers: List[TierSegment] = field(default_factory=list)


def _check_distance(distance_km: float) -> None:
    if distance_km is None or distance_km != distance_km or distance_km < 0:
        raise ValidationError("distance_km must be a non-negative number")


def _segments(distance_km: float) -> List[TierSegment]:
    segments = []
    for tier in TIERS:
        if distance_km <= tier.start_km:
            break
        upper = distance_km if tier.end_km is None else min(distance_km, tier.end_km)
        km = upper - tier.start_km
        segments.append(TierSegment(tier.label, tier.rate_per_km, km, km * tier.rate_per_km))
    return segments


def commission_rate_for(distance_km: float) -> float:
    """Rate of the tier containing the trip's upper end (breakpoints belong to the lower tier)"""
    _check_distance(distance_km)
    if distance_km <= BASE_FARE_KM:
        return BASE_COMMISSION_RATE
    for tier in TIERS:
        if tier.end_km is None or distance_km <= tier.end_km:
            return tier.commission_rate
    return TIERS[-1].commission_rate


def fare_breakdown(distance_km: float) -> FareBreakdown:
    """Fare plus the per-tier segments it was built from"""
    _check_distance(distance_km)
    segments = _segments(distance_km)
    distance_fare = sum(segment.fare for segment in segments)
    rate = commission_rate_for(distance_km)

    # Commission is taken from the rounded total so both halves add up exactly
    total_price = round_half_up(BASE_FARE + distance_fare)
    commission = round_half_up(total_price * rate)
    fare = Fare(
        total_price=total_price,
        commission=commission,
        rider_earnings=total_price - commission,
    )

    return FareBreakdown(
        distance_km=round(distance_km, 2),
        base_fare=BASE_FARE,
        distance_fare=round_half_up(distance_fare),
        commission_rate=round_half_up(rate * 100),
        fare=fare,
        tiers=segments,
    )


def calculate_fare(distance_km: float) -> Fare:
    return fare_breakdown(distance_km).fare
