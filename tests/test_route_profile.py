from __future__ import annotations

import json
import math
from pathlib import Path

import pytest

from hybrid.route.loader import RouteDataError, load_route, parse_route, route_to_document
from hybrid.route.profile import (
    EARTH_RADIUS_M,
    GeoPoint,
    ProfilePoint,
    RouteProfile,
    haversine_distance,
    preprocess,
)

# One degree of latitude along a meridian.
METRES_PER_DEGREE = EARTH_RADIUS_M * math.pi / 180


def _three_point_route() -> RouteProfile:
    return RouteProfile(
        "Hill",
        [
            ProfilePoint(distance=0, elevation=0, grade=0),
            ProfilePoint(distance=1000, elevation=50, grade=5),
            ProfilePoint(distance=2000, elevation=50, grade=0),
        ],
    )


def test_grade_at_distance_three_point_route() -> None:
    route = _three_point_route()

    assert route.grade_at_distance(500) == 5
    assert route.grade_at_distance(-10) == 0
    assert route.grade_at_distance(5000) == 0
    assert route.grade_at_distance(1000) == 0
    assert route.grade_at_distance(1500) == 0
    assert route.grade_at_distance(999.9) == 5


def test_grade_at_distance_is_idempotent() -> None:
    route = _three_point_route()
    assert [route.grade_at_distance(750) for _ in range(3)] == [5, 5, 5]


def test_haversine_one_degree_of_latitude() -> None:
    assert haversine_distance(0, 0, 1, 0) == pytest.approx(METRES_PER_DEGREE)
    assert haversine_distance(45, 7, 45, 7) == 0


def test_preprocess_builds_cumulative_distance_and_arriving_grade() -> None:
    step = 1000 / METRES_PER_DEGREE
    points = [
        GeoPoint(latitude=0, longitude=0, elevation=100),
        GeoPoint(latitude=step, longitude=0, elevation=150),
        GeoPoint(latitude=2 * step, longitude=0, elevation=140),
    ]

    table = preprocess(points)

    assert table[0] == ProfilePoint(distance=0, elevation=100, grade=0)
    assert table[1].distance == pytest.approx(1000)
    assert table[1].grade == pytest.approx(5)
    assert table[2].distance == pytest.approx(2000)
    assert table[2].grade == pytest.approx(-1)


def test_preprocess_empty_and_duplicate_points() -> None:
    assert preprocess([]) == ()

    same = GeoPoint(latitude=46.0, longitude=7.0, elevation=500)
    table = preprocess([same, GeoPoint(46.0, 7.0, 520)])
    assert table[1].distance == 0
    assert table[1].grade == 0


def test_route_totals() -> None:
    route = _three_point_route()
    assert route.total_distance == 2000
    assert route.average_grade == pytest.approx(2.5)
    assert RouteProfile("Empty", []).total_distance == 0
    assert RouteProfile("Empty", []).grade_at_distance(10) == 0


def test_load_route_document(tmp_path: Path) -> None:
    step = 500 / METRES_PER_DEGREE
    document = route_to_document(
        "Col Test",
        [GeoPoint(0, 0, 10), GeoPoint(step, 0, 30), GeoPoint(2 * step, 0, 30)],
    )
    path = tmp_path / "col.json"
    path.write_text(json.dumps(document), encoding="utf-8")

    route = load_route(path)

    assert route.name == "Col Test"
    assert len(route) == 3
    assert route.total_distance == pytest.approx(1000)
    assert route.grade_at_distance(250) == pytest.approx(4)


@pytest.mark.parametrize(
    "document",
    [
        [],
        {"geoPoints": [{"latitude": 0, "longitude": 0, "elevation": 0}]},
        {"name": "x", "geoPoints": []},
        {"name": "x", "geoPoints": [{"latitude": 0, "longitude": 0}]},
        {"name": "x", "geoPoints": [{"latitude": "0", "longitude": 0, "elevation": 0}]},
        {"name": "x", "geoPoints": [{"latitude": True, "longitude": 0, "elevation": 0}]},
        {"name": "x", "geoPoints": [{"latitude": float("nan"), "longitude": 0, "elevation": 0}]},
    ],
)
def test_parse_route_rejects_malformed_documents(document: object) -> None:
    with pytest.raises(RouteDataError):
        parse_route(document)


def test_load_route_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(RouteDataError):
        load_route(path)
    with pytest.raises(RouteDataError):
        load_route(tmp_path / "missing.json")
