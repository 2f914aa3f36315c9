"""
radius_utils.py — Point-in-radius membership for location-based audiences.

Provides:
    - Haversine distance between two (lat, lon) points
    - Bounding-box pre-filter for large recipient populations
    - Point-in-radius test used by the audience resolver

Distances are in **meters** (broadcast geofences are authored in meters).
Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where R is Earth's mean radius ≈ 6,371,008.8 m. Accurate to ~0.5%,
which is well inside the margin of a phone's last-known position.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_M: float = 6_371_008.8  # IAU mean radius


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine_m(point1: Coordinate, point2: Coordinate) -> float:
    """
    Great-circle distance in meters.

    Examples
    --------
    >>> 4900 < haversine_m(Coordinate(28.6562, 77.2410), Coordinate(28.6129, 77.2295)) < 5000
    True
    >>> haversine_m(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before expensive Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_m: float) -> Tuple[float, float, float, float]:
    """
    Lat/lon box that fully contains the circle (center, radius_m).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees.

    Longitudes are normalised to [-180, 180]. When the circle crosses the
    antimeridian the box wraps and min_lon > max_lon. When the circle
    contains a pole every longitude is inside the box.

    >>> bounding_box(Coordinate(-17.0, 179.999), 500)[2] > 0
    True
    """
    angular = radius_m / EARTH_RADIUS_M
    angular_deg = math.degrees(angular)

    min_lat = center.latitude - angular_deg
    max_lat = center.latitude + angular_deg

    if max_lat >= 90.0 or min_lat <= -90.0:
        return (max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    # Widest longitude offset of the circle, reached off the centre's parallel
    delta_lon = math.degrees(math.asin(min(1.0, math.sin(angular) / math.cos(center.lat_rad))))
    if delta_lon >= 180.0:
        return (min_lat, max_lat, -180.0, 180.0)

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0:
        min_lon += 360.0
    if max_lon > 180.0:
        max_lon -= 360.0
    return (min_lat, max_lat, min_lon, max_lon)


def inside_bbox(point: Coordinate, bbox: Tuple[float, float, float, float]) -> bool:
    """Quick rectangular check; a box with min_lon > max_lon wraps the antimeridian."""
    min_lat, max_lat, min_lon, max_lon = bbox
    if not min_lat <= point.latitude <= max_lat:
        return False
    if min_lon <= max_lon:
        return min_lon <= point.longitude <= max_lon
    return point.longitude >= min_lon or point.longitude <= max_lon


# ---------------------------------------------------------------------------
# Radius membership
# ---------------------------------------------------------------------------

def is_within_radius(
    center: Coordinate,
    point: Coordinate,
    radius_m: float,
    bbox: Optional[Tuple[float, float, float, float]] = None,
) -> bool:
    """
    True if `point` lies inside the circle (center, radius_m), boundary included.

    Pass a precomputed `bbox` when testing many points against one circle.

    Raises
    ------
    ValueError
        If radius_m is not positive.
    """
    if radius_m <= 0:
        raise ValueError(f"Radius must be positive, got {radius_m}")

    if not inside_bbox(point, bbox or bounding_box(center, radius_m)):
        return False
    return haversine_m(center, point) <= radius_m


def format_distance(meters: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(450)
    '450 m'
    >>> format_distance(3726.6)
    '3.73 km'
    """
    if meters < 1000.0:
        return f"{int(meters)} m"
    return f"{meters / 1000.0:.2f} km"
