from __future__ import annotations

import json
from pathlib import Path

import pytest

from hybrid.workout.model import ErgStep, SimStep, WorkoutPlan
from hybrid.workout.parser import (
    WorkoutParseError,
    load_workout,
    parse_workout,
    plan_to_document,
)


def test_load_workout_json(tmp_path: Path) -> None:
    workout_file = tmp_path / "sample.json"
    workout_file.write_text(
        (
            '{"name":"Hybrid","steps":[{"type":"erg","duration_min":10,"power_watts":150},'
            '{"type":"sim","segment_name":"Alpe"},'
            '{"type":"erg","duration_min":0.5,"power_watts":300,"label":"Kick"}]}'
        ),
        encoding="utf-8",
    )

    plan = load_workout(workout_file)

    assert plan.name == "Hybrid"
    assert plan.steps == (
        ErgStep(duration_min=10, power_watts=150),
        SimStep(segment_name="Alpe"),
        ErgStep(duration_min=0.5, power_watts=300, label="Kick"),
    )
    assert plan.total_erg_duration_sec == 630
    assert plan.segment_names == {"Alpe"}


def test_load_workout_json_accepts_stored_document_aliases(tmp_path: Path) -> None:
    workout_file = tmp_path / "stored.json"
    workout_file.write_text(
        (
            '{"name":"Stored","steps":[{"type":"erg","duration":5,"power":180},'
            '{"type":"sim","segmentName":"Col"}]}'
        ),
        encoding="utf-8",
    )

    plan = load_workout(workout_file)

    assert plan.steps[0] == ErgStep(duration_min=5, power_watts=180)
    assert plan.steps[1] == SimStep(segment_name="Col")


def test_load_workout_csv(tmp_path: Path) -> None:
    workout_file = tmp_path / "sample.csv"
    workout_file.write_text(
        "type,duration_min,power_watts,segment_name,label\n"
        "erg,5,120,,warmup\n"
        "sim,,,Alpe,climb\n"
        "ERG,2,200,,\n",
        encoding="utf-8",
    )

    plan = load_workout(workout_file)

    assert plan.name == "sample"
    assert len(plan.steps) == 3
    assert plan.steps[0] == ErgStep(duration_min=5, power_watts=120, label="warmup")
    assert plan.steps[1] == SimStep(segment_name="Alpe", label="climb")
    assert plan.steps[2] == ErgStep(duration_min=2, power_watts=200)


def test_plan_document_round_trip() -> None:
    plan = WorkoutPlan(
        "Mixed",
        (ErgStep(3, 140, label="easy"), SimStep("Ridge")),
    )

    assert parse_workout(json.loads(json.dumps(plan_to_document(plan)))) == plan


def test_load_workout_invalid_extension(tmp_path: Path) -> None:
    workout_file = tmp_path / "sample.txt"
    workout_file.write_text("hello", encoding="utf-8")

    with pytest.raises(WorkoutParseError):
        load_workout(workout_file)


def test_load_workout_invalid_value(tmp_path: Path) -> None:
    workout_file = tmp_path / "bad.csv"
    workout_file.write_text(
        "type,duration_min,power_watts,segment_name\nerg,0,100,\n",
        encoding="utf-8",
    )

    with pytest.raises(WorkoutParseError):
        load_workout(workout_file)


def test_load_workout_missing_csv_headers(tmp_path: Path) -> None:
    workout_file = tmp_path / "old.csv"
    workout_file.write_text("duration_sec,target_watts\n60,100\n", encoding="utf-8")

    with pytest.raises(WorkoutParseError):
        load_workout(workout_file)


@pytest.mark.parametrize(
    "document",
    [
        {"name": "x", "steps": []},
        {"name": "x", "steps": [{"type": "climb"}]},
        {"name": "x", "steps": [{"type": "erg", "duration_min": 5}]},
        {"name": "x", "steps": [{"type": "erg", "duration_min": 5, "power_watts": -20}]},
        {"name": "x", "steps": [{"type": "erg", "duration_min": "soon", "power_watts": 100}]},
        {"name": "x", "steps": [{"type": "erg", "duration_min": True, "power_watts": 100}]},
        {"name": "x", "steps": [{"type": "sim"}]},
        {"name": "x", "steps": "erg"},
        {"name": 3, "steps": []},
        ["erg"],
    ],
)
def test_parse_workout_rejects_invalid_documents(document: object) -> None:
    with pytest.raises(WorkoutParseError):
        parse_workout(document)


def test_workout_parse_error_is_a_value_error() -> None:
    assert issubclass(WorkoutParseError, ValueError)
