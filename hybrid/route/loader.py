"""Route document loading (Garmin course export JSON)."""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Mapping

from hybrid.route.profile import GeoPoint, RouteProfile


class RouteDataError(ValueError):
    """Raised when a route document is missing or has malformed fields."""


def load_route(path: str | Path) -> RouteProfile:
    file_path = Path(path)
    try:
        document = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise RouteDataError(f"Invalid route JSON: {exc}") from exc
    except OSError as exc:
        raise RouteDataError(f"Unable to read route {file_path}: {exc}") from exc
    return parse_route(document)


def parse_route(document: Any) -> RouteProfile:
    if not isinstance(document, Mapping):
        raise RouteDataError("Route document must be an object")

    name = document.get("name")
    if not isinstance(name, str) or not name.strip():
        raise RouteDataError("Invalid route: need 'name' and 'geoPoints'")

    raw_points = document.get("geoPoints")
    if not isinstance(raw_points, list) or not raw_points:
        raise RouteDataError("Invalid route: need 'name' and 'geoPoints'")

    points = [_parse_point(raw, index) for index, raw in enumerate(raw_points)]
    return RouteProfile.from_geo_points(name.strip(), points)


def route_to_document(name: str, points: list[GeoPoint]) -> dict[str, Any]:
    return {
        "name": name,
        "geoPoints": [
            {
                "latitude": point.latitude,
                "longitude": point.longitude,
                "elevation": point.elevation,
            }
            for point in points
        ],
    }


def _parse_point(raw: object, index: int) -> GeoPoint:
    if not isinstance(raw, Mapping):
        raise RouteDataError(f"geoPoint {index}: must be an object")
    return GeoPoint(
        latitude=_number(raw, "latitude", index),
        longitude=_number(raw, "longitude", index),
        elevation=_number(raw, "elevation", index),
    )


def _number(raw: Mapping[str, Any], field_name: str, index: int) -> float:
    value = raw.get(field_name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RouteDataError(f"geoPoint {index}: invalid {field_name}")
    if not math.isfinite(value):
        raise RouteDataError(f"geoPoint {index}: {field_name} must be finite")
    return float(value)
