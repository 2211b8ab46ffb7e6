from __future__ import annotations

from pathlib import Path

from hybrid.workout.model import StepSummary, WorkoutSummary
from hybrid.workout.session_store import append_workout_summary, load_recent_workouts


def _summary(timestamp: str, distance: float) -> WorkoutSummary:
    return WorkoutSummary(
        total_time=1800.0,
        total_distance=distance,
        average_speed=distance / 1800 * 3.6,
        steps=(
            StepSummary(
                step_number=1,
                type="erg",
                planned_duration=600.0,
                actual_duration=600.0,
                distance=distance / 2,
                average_speed_kph=distance / 2 / 600 * 3.6,
                target="150W",
                segment_name=None,
                route_distance=None,
                route_completed=None,
            ),
            StepSummary(
                step_number=2,
                type="sim",
                planned_duration=None,
                actual_duration=1200.0,
                distance=distance / 2,
                average_speed_kph=distance / 2 / 1200 * 3.6,
                target="Route Grade",
                segment_name="Alpe",
                route_distance=distance / 2,
                route_completed=True,
            ),
        ),
        timestamp=timestamp,
    )


def test_append_and_load_recent_workouts(tmp_path: Path) -> None:
    store = tmp_path / "workouts.jsonl"
    first = _summary("2026-02-25T10:00:00+00:00", 16100.0)
    second = _summary("2026-02-26T10:00:00+00:00", 8200.0)

    append_workout_summary(first, path=store)
    append_workout_summary(second, path=store)

    loaded = load_recent_workouts(limit=5, path=store)

    assert loaded == [second, first]
    assert loaded[0].steps[1].route_completed is True


def test_load_recent_workouts_skips_unreadable_lines(tmp_path: Path) -> None:
    store = tmp_path / "nested" / "workouts.jsonl"
    append_workout_summary(_summary("2026-02-25T10:00:00+00:00", 1000.0), path=store)
    with store.open("a", encoding="utf-8") as handle:
        handle.write("{broken\n\n")
        handle.write('{"total_time": 1}\n')

    loaded = load_recent_workouts(path=store)

    assert len(loaded) == 1
    assert load_recent_workouts(limit=1, path=tmp_path / "missing.jsonl") == []
