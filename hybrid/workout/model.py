"""Workout domain models."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Literal, Optional, Union

StepType = Literal["erg", "sim"]


@dataclass(frozen=True)
class ErgStep:
    duration_min: float
    power_watts: float
    label: str | None = None
    type: ClassVar[StepType] = "erg"

    @property
    def duration_sec(self) -> float:
        return self.duration_min * 60


@dataclass(frozen=True)
class SimStep:
    segment_name: str
    label: str | None = None
    type: ClassVar[StepType] = "sim"


WorkoutStep = Union[ErgStep, SimStep]


@dataclass(frozen=True)
class WorkoutPlan:
    name: str
    steps: tuple[WorkoutStep, ...]

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def total_erg_duration_sec(self) -> float:
        return sum(step.duration_sec for step in self.steps if isinstance(step, ErgStep))

    @property
    def segment_names(self) -> set[str]:
        return {step.segment_name for step in self.steps if isinstance(step, SimStep)}


@dataclass(frozen=True)
class StepStarted:
    step_number: int
    step: WorkoutStep


@dataclass(frozen=True)
class StepSummary:
    step_number: int
    type: StepType
    planned_duration: Optional[float]
    actual_duration: float
    distance: float
    average_speed_kph: float
    target: str
    segment_name: Optional[str]
    route_distance: Optional[float]
    route_completed: Optional[bool]


@dataclass(frozen=True)
class WorkoutSummary:
    total_time: float
    total_distance: float
    average_speed: float
    steps: tuple[StepSummary, ...]
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WorkoutSummary":
        return cls(
            total_time=float(payload["total_time"]),
            total_distance=float(payload["total_distance"]),
            average_speed=float(payload["average_speed"]),
            steps=tuple(StepSummary(**item) for item in payload.get("steps", [])),
            timestamp=str(payload["timestamp"]),
        )
