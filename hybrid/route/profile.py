"""Route distance/elevation/grade table built from geo points."""

from __future__ import annotations

import bisect
import math
from dataclasses import dataclass
from typing import Sequence

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float
    elevation: float


@dataclass(frozen=True)
class ProfilePoint:
    distance: float
    elevation: float
    grade: float


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def preprocess(points: Sequence[GeoPoint]) -> tuple[ProfilePoint, ...]:
    """Cumulative distance, elevation and arriving-segment grade per point."""
    if not points:
        return ()

    out = [ProfilePoint(distance=0.0, elevation=points[0].elevation, grade=0.0)]
    total = 0.0
    for p1, p2 in zip(points, points[1:]):
        segment = haversine_distance(p1.latitude, p1.longitude, p2.latitude, p2.longitude)
        total += segment
        grade = ((p2.elevation - p1.elevation) / segment) * 100 if segment > 0 else 0.0
        out.append(ProfilePoint(distance=total, elevation=p2.elevation, grade=grade))
    return tuple(out)


class RouteProfile:
    """Immutable grade table for one named route."""

    def __init__(self, name: str, points: Sequence[ProfilePoint]) -> None:
        self.name = name
        self.points: tuple[ProfilePoint, ...] = tuple(points)
        self._distances = [point.distance for point in self.points]

    @classmethod
    def from_geo_points(cls, name: str, geo_points: Sequence[GeoPoint]) -> "RouteProfile":
        return cls(name, preprocess(geo_points))

    def __len__(self) -> int:
        return len(self.points)

    def __repr__(self) -> str:
        return (
            f"RouteProfile(name={self.name!r}, points={len(self.points)}, "
            f"total_distance={self.total_distance:.1f})"
        )

    @property
    def total_distance(self) -> float:
        return self.points[-1].distance if self.points else 0.0

    @property
    def average_grade(self) -> float:
        if len(self.points) < 2 or self.total_distance <= 0:
            return 0.0
        rise = self.points[-1].elevation - self.points[0].elevation
        return (rise / self.total_distance) * 100

    def grade_at_distance(self, distance: float) -> float:
        """Grade of the segment being ridden at ``distance`` metres, not interpolated."""
        if not self.points:
            return 0.0
        if distance <= 0:
            return self.points[0].grade
        if distance >= self.points[-1].distance:
            return self.points[-1].grade
        # first entry strictly beyond distance closes the segment we are on
        return self.points[bisect.bisect_right(self._distances, distance)].grade
