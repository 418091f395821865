"""
Rider Eligibility Filter

Classifies a rider as on-route or off-route for an order and orders the
candidates for the offer sequence.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .core.settings import settings
from .utils import haversine_km

LatLng = Tuple[float, float]


@dataclass(frozen=True)
class RiderCandidate:
    rider_id: int
    lat: float
    lng: float
    distance_to_pickup: float
    on_route: bool

    @property
    def rank_key(self):
        # On-route first, nearest first, lowest id first
        return (not self.on_route, self.distance_to_pickup, self.rider_id)


def is_on_route(
    rider: LatLng,
    pickup: LatLng,
    drop: LatLng,
    max_pickup_km: Optional[float] = None,
    max_detour_ratio: Optional[float] = None,
) -> Tuple[bool, float]:
    """
    Return (on_route, distance_to_pickup).

    A rider is on-route when they are close to the pickup and routing the
    trip through their current position stays within the detour ratio of
    the direct pickup-to-drop distance.
    """
    if max_pickup_km is None:
        max_pickup_km = settings.ON_ROUTE_MAX_PICKUP_KM
    if max_detour_ratio is None:
        max_detour_ratio = settings.ON_ROUTE_MAX_DETOUR_RATIO

    distance_to_pickup = haversine_km(rider[0], rider[1], pickup[0], pickup[1])
    distance_to_drop = haversine_km(rider[0], rider[1], drop[0], drop[1])
    route_distance = haversine_km(pickup[0], pickup[1], drop[0], drop[1])

    rider_total = distance_to_pickup + route_distance + distance_to_drop
    on_route = distance_to_pickup <= max_pickup_km and rider_total <= route_distance * max_detour_ratio
    return on_route, distance_to_pickup


def classify_rider(rider, pickup: LatLng, drop: LatLng) -> RiderCandidate:
    """Build a candidate from anything with id/lat/lng (a User row or a test double)"""
    on_route, distance = is_on_route((rider.lat, rider.lng), pickup, drop)
    return RiderCandidate(
        rider_id=rider.id,
        lat=rider.lat,
        lng=rider.lng,
        distance_to_pickup=distance,
        on_route=on_route,
    )


def rank_riders(riders: Iterable, pickup: LatLng, drop: LatLng) -> List[RiderCandidate]:
    """Ranked offer sequence: on-route riders, then the rest, each by distance to pickup"""
    candidates = [classify_rider(rider, pickup, drop) for rider in riders]
    candidates.sort(key=lambda c: c.rank_key)
    return candidates
