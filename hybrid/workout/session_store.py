"""Local persistence for completed workout summaries."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from hybrid.workout.model import WorkoutSummary

_LOGGER = logging.getLogger(__name__)


def _default_summaries_path() -> Path:
    return Path.home() / ".ftms-hybrid" / "workouts.jsonl"


def append_workout_summary(summary: WorkoutSummary, path: Path | None = None) -> Path:
    target = path or _default_summaries_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(summary.to_dict(), ensure_ascii=True) + "\n")
    return target


def load_recent_workouts(limit: int = 20, path: Path | None = None) -> list[WorkoutSummary]:
    target = path or _default_summaries_path()
    if not target.exists():
        return []

    lines = target.read_text(encoding="utf-8").splitlines()
    out: list[WorkoutSummary] = []
    for raw in reversed(lines):
        if not raw.strip():
            continue
        try:
            out.append(WorkoutSummary.from_dict(json.loads(raw)))
        except (ValueError, KeyError, TypeError) as exc:
            _LOGGER.debug("Skipping unreadable summary line: %s", exc)
            continue
        if len(out) >= limit:
            break
    return out
