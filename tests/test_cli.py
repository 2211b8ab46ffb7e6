from __future__ import annotations

import json
from pathlib import Path

import pytest

from hybrid.ble.transport import SIM_DEVICE_LABEL, BleakTransport, SimulatedTrainerTransport
from hybrid.cli import main as cli
from hybrid.route.loader import route_to_document
from hybrid.route.profile import GeoPoint
from hybrid.workout.model import ErgStep, SimStep, WorkoutPlan


def _write_route(path: Path, name: str) -> Path:
    points = [
        GeoPoint(latitude=46.0, longitude=7.0, elevation=500),
        GeoPoint(latitude=46.001, longitude=7.0, elevation=510),
    ]
    path.write_text(json.dumps(route_to_document(name, points)), encoding="utf-8")
    return path


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])

    assert args.connect is None
    assert args.erg is None
    assert args.workout is None
    assert args.route == []
    assert args.ack_timeout == 4000.0
    assert args.ftp == 250
    assert not args.debug_sim_ht


def test_parser_connect_and_routes() -> None:
    args = cli.build_parser().parse_args(
        ["--connect", "--route", "a.json", "--route", "b.json", "--erg", "180"]
    )

    assert args.connect == "auto"
    assert args.route == [Path("a.json"), Path("b.json")]
    assert args.erg == 180


def test_build_transport() -> None:
    assert isinstance(cli.build_transport(True), SimulatedTrainerTransport)
    assert isinstance(cli.build_transport(False), BleakTransport)


def test_load_routes_keys_by_route_name(tmp_path: Path) -> None:
    routes = cli.load_routes([_write_route(tmp_path / "r.json", "Col du Test")])

    assert list(routes) == ["Col du Test"]
    assert routes["Col du Test"].total_distance > 100


def test_single_route_serves_every_sim_segment(tmp_path: Path) -> None:
    routes = cli.load_routes([_write_route(tmp_path / "r.json", "Only")])
    plan = WorkoutPlan("p", (SimStep("Alpe"), ErgStep(1, 100), SimStep("Ventoux")))

    bound = cli.bind_routes(plan, routes)

    assert bound["Alpe"] is routes["Only"]
    assert bound["Ventoux"] is routes["Only"]


def test_several_routes_are_matched_by_name(tmp_path: Path) -> None:
    routes = cli.load_routes(
        [_write_route(tmp_path / "a.json", "A"), _write_route(tmp_path / "b.json", "B")]
    )
    plan = WorkoutPlan("p", (SimStep("Alpe"),))

    assert cli.bind_routes(plan, routes) == routes


def test_main_scan_with_simulated_trainer(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.argv", ["ftms-hybrid", "--scan", "--debug-sim-ht"])

    assert cli.main() == 0
    assert SIM_DEVICE_LABEL in capsys.readouterr().out


def test_main_rejects_bad_workout(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    workout = tmp_path / "plan.json"
    workout.write_text('{"name": "x", "steps": []}', encoding="utf-8")
    monkeypatch.setattr("sys.argv", ["ftms-hybrid", "--workout", str(workout)])

    assert cli.main() == 1
    assert "Error: Workout must contain at least one step" in capsys.readouterr().out


def test_main_without_action_prints_help(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.argv", ["ftms-hybrid"])

    assert cli.main() == 1
    assert "usage:" in capsys.readouterr().out
