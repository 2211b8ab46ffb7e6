"""Workout plan parser (CSV/JSON)."""

from __future__ import annotations

import csv
import json
import math
from pathlib import Path
from typing import Any, Mapping

from hybrid.workout.model import ErgStep, SimStep, WorkoutPlan, WorkoutStep

CSV_HEADERS = ("type", "duration_min", "power_watts", "segment_name")


class WorkoutParseError(ValueError):
    """Raised when a workout file is invalid."""


def load_workout(path: str | Path) -> WorkoutPlan:
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if suffix == ".json":
        return _load_json(file_path)
    if suffix == ".csv":
        return _load_csv(file_path)
    raise WorkoutParseError(
        f"Unsupported workout format '{file_path.suffix}'. Use .json or .csv"
    )


def parse_workout(document: Any, default_name: str = "Workout") -> WorkoutPlan:
    """Build a plan from an already-decoded JSON document."""
    if not isinstance(document, Mapping):
        raise WorkoutParseError("Workout JSON must be an object")

    name_obj = document.get("name", default_name)
    if not isinstance(name_obj, str):
        raise WorkoutParseError("Workout field 'name' must be a string")

    steps_obj = document.get("steps")
    if not isinstance(steps_obj, list):
        raise WorkoutParseError("Workout field 'steps' must be an array")

    steps: list[WorkoutStep] = []
    for i, raw in enumerate(steps_obj):
        if not isinstance(raw, Mapping):
            raise WorkoutParseError(f"Step {i + 1}: must be an object")
        steps.append(
            _build_step(
                type_obj=raw.get("type"),
                duration_obj=_first(raw, "duration_min", "duration"),
                power_obj=_first(raw, "power_watts", "power"),
                segment_obj=_first(raw, "segment_name", "segmentName"),
                label_obj=raw.get("label"),
                index=i,
            )
        )

    return _build_plan(name=name_obj.strip() or default_name, steps=steps)


def plan_to_document(plan: WorkoutPlan) -> dict[str, Any]:
    steps: list[dict[str, Any]] = []
    for step in plan.steps:
        if isinstance(step, ErgStep):
            item: dict[str, Any] = {
                "type": "erg",
                "duration_min": step.duration_min,
                "power_watts": step.power_watts,
            }
        else:
            item = {"type": "sim", "segment_name": step.segment_name}
        if step.label:
            item["label"] = step.label
        steps.append(item)
    return {"name": plan.name, "steps": steps}


def _load_json(path: Path) -> WorkoutPlan:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise WorkoutParseError(f"Invalid JSON: {exc}") from exc
    return parse_workout(data, default_name=path.stem)


def _load_csv(path: Path) -> WorkoutPlan:
    rows: list[WorkoutStep] = []
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        fields = set(reader.fieldnames or [])
        if not set(CSV_HEADERS).issubset(fields):
            raise WorkoutParseError(
                "CSV must contain headers: type,duration_min,power_watts,segment_name[,label]"
            )

        for i, row in enumerate(reader):
            rows.append(
                _build_step(
                    type_obj=row.get("type"),
                    duration_obj=_blank_to_none(row.get("duration_min")),
                    power_obj=_blank_to_none(row.get("power_watts")),
                    segment_obj=_blank_to_none(row.get("segment_name")),
                    label_obj=row.get("label"),
                    index=i,
                )
            )

    return _build_plan(name=path.stem, steps=rows)


def _build_step(
    *,
    type_obj: object,
    duration_obj: object,
    power_obj: object,
    segment_obj: object,
    label_obj: object,
    index: int,
) -> WorkoutStep:
    step_type = str(type_obj).strip().lower() if type_obj is not None else ""

    label: str | None
    if label_obj is None:
        label = None
    else:
        label = str(label_obj).strip() or None

    if step_type == "erg":
        duration_min = _parse_number(raw=duration_obj, field_name="duration_min", index=index)
        power_watts = _parse_number(raw=power_obj, field_name="power_watts", index=index)
        if duration_min <= 0:
            raise WorkoutParseError(f"Step {index + 1}: duration_min must be > 0")
        if power_watts <= 0:
            raise WorkoutParseError(f"Step {index + 1}: power_watts must be > 0")
        return ErgStep(duration_min=duration_min, power_watts=power_watts, label=label)

    if step_type == "sim":
        if segment_obj is None or not str(segment_obj).strip():
            raise WorkoutParseError(f"Step {index + 1}: SIM step needs segment_name")
        return SimStep(segment_name=str(segment_obj).strip(), label=label)

    raise WorkoutParseError(f"Step {index + 1}: unknown step type {type_obj!r}")


def _build_plan(*, name: str, steps: list[WorkoutStep]) -> WorkoutPlan:
    if not steps:
        raise WorkoutParseError("Workout must contain at least one step")
    return WorkoutPlan(name=name, steps=tuple(steps))


def _parse_number(*, raw: object, field_name: str, index: int) -> float:
    if raw is None or isinstance(raw, bool):
        raise WorkoutParseError(f"Step {index + 1}: invalid {field_name}")
    try:
        value = float(str(raw).strip())
    except ValueError as exc:
        raise WorkoutParseError(f"Step {index + 1}: invalid {field_name}") from exc
    if not math.isfinite(value):
        raise WorkoutParseError(f"Step {index + 1}: invalid {field_name}")
    return value


def _first(raw: Mapping[str, Any], *keys: str) -> object:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _blank_to_none(raw: str | None) -> str | None:
    if raw is None or raw.strip() == "":
        return None
    return raw
