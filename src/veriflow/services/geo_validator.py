"""Geofence validation for photo evidence.

Pure functions. No database access and no network.

Computes great-circle distance between a photo's captured GPS position and
the expected property location, and decides whether the capture falls within
the allowed tolerance.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from veriflow.domain.enums import PolicyType

EARTH_RADIUS_METERS = 6_371_000.0

DEFAULT_TOLERANCE_METERS = 100.0

# Policy types bound to a fixed location; photos for these must be geotagged
GPS_REQUIRED_POLICY_TYPES: frozenset[str] = frozenset({PolicyType.HOME_INSURANCE.value})


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> Optional["Coordinates"]:
        """Build from the stored ``{"lat": .., "lon": ..}`` shape; None passes through."""
        if not data:
            return None
        lat = data.get("lat")
        lon = data.get("lon", data.get("lng"))
        if lat is None or lon is None:
            return None
        return cls(lat=float(lat), lon=float(lon))

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


@dataclass(frozen=True)
class GeoValidationResult:
    is_valid: bool
    distance_meters: Optional[int]
    within_tolerance: bool
    message: str

    @property
    def accepted(self) -> bool:
        """True when the evidence may be attached to a submission."""
        return self.is_valid and self.within_tolerance

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "distance_meters": self.distance_meters,
            "within_tolerance": self.within_tolerance,
            "message": self.message,
        }


def distance_meters(a: Coordinates, b: Coordinates) -> float:
    """Return the haversine distance in meters between two points."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    dlat = math.radians(b.lat - a.lat)
    dlon = math.radians(b.lon - a.lon)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    # Float error can push h past 1 for near-antipodal points
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_METERS * 2 * math.asin(math.sqrt(h))


def validate_location(
    captured: Optional[Coordinates],
    expected: Optional[Coordinates],
    tolerance_meters: float = DEFAULT_TOLERANCE_METERS,
) -> GeoValidationResult:
    """Check a captured position against the expected location.

    - No captured position is a hard failure: the evidence cannot be validated.
    - No expected position means there is nothing to check against.
    """
    if captured is None:
        return GeoValidationResult(
            is_valid=False,
            distance_meters=None,
            within_tolerance=False,
            message="No GPS data captured",
        )

    if expected is None:
        return GeoValidationResult(
            is_valid=True,
            distance_meters=None,
            within_tolerance=True,
            message="No property coordinates to validate against",
        )

    distance = distance_meters(captured, expected)
    rounded = round(distance)
    within = distance <= tolerance_meters
    if within:
        message = f"Within {tolerance_meters:g}m of expected location ({rounded}m)"
    else:
        message = f"Outside tolerance: {rounded}m away (max: {tolerance_meters:g}m)"

    return GeoValidationResult(
        is_valid=True,
        distance_meters=rounded,
        within_tolerance=within,
        message=message,
    )


def is_gps_required(policy_type: str | PolicyType | None) -> bool:
    """GPS capture is enforced only for property-bound policy types."""
    if policy_type is None:
        return False
    value = policy_type.value if isinstance(policy_type, PolicyType) else policy_type
    return value in GPS_REQUIRED_POLICY_TYPES
