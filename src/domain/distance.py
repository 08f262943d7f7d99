"""
Distance and ETA estimates between a captain and a pickup point.

Assumption
----------
Candidate search uses great-circle (Haversine) distance over the captains'
last reported coordinates rather than road distance from a routing engine.
ETA is a flat 3 minutes per km, which is what the captain app displays
before turn-by-turn routing kicks in.

Complexity: O(1) per call.
"""

import math

EARTH_RADIUS_KM = 6_371.0
MINUTES_PER_KM = 3


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)

    h = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def eta_minutes(distance_km: float) -> int:
    return round(distance_km * MINUTES_PER_KM)
