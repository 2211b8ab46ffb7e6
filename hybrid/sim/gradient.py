"""Real-time grade smoothing with momentum assistance for SIM mode."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from hybrid.core.clock import AsyncioClock, Clock

_LOGGER = logging.getLogger(__name__)

GRADIENT_RAMP_DISTANCE_M = 10.0
MAX_GRADE_CHANGE_PER_RAMP = 1.5
MAX_GRADE_CHANGE_PER_SECOND = 0.5
MIN_GRADE_CHANGE_PER_TICK = 0.1
MOMENTUM_FULL_SPEED_KPH = 12.0
MOMENTUM_MAX_REDUCTION = 0.25
DOWNHILL_GRADE_FLOOR = -2.0

COMMAND_INTERVAL_MS = 3000.0
MIN_COMMAND_DELTA_PCT = 0.3


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class GradeState:
    current_grade: float
    target_grade: float
    last_update_ms: float
    last_update_distance: float


class GradientSimulator:
    """Per-ride grade state: turns raw route grade into the grade sent to the trainer.

    Target grade only moves every ``GRADIENT_RAMP_DISTANCE_M`` metres, by at
    most ``MAX_GRADE_CHANGE_PER_RAMP`` points, and the applied grade reaches
    it on that tick; between ramp points the target is pinned to the current
    grade, so nothing drifts. Speed takes up to 25% off
    the applied grade, and the result never drops below ``DOWNHILL_GRADE_FLOOR``.
    Tracked grade never includes the momentum reduction.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or AsyncioClock()
        self.state: Optional[GradeState] = None
        self._last_sent_ms: Optional[float] = None
        self._last_sent_grade: Optional[float] = None

    def reset(self, start_grade: Optional[float] = None) -> None:
        """Forget the ride. With ``start_grade``, seed the state at distance 0 instead."""
        self.state = None
        if start_grade is not None:
            self.state = GradeState(
                current_grade=start_grade,
                target_grade=start_grade,
                last_update_ms=self._clock.now_ms(),
                last_update_distance=0.0,
            )
        self._last_sent_ms = None
        self._last_sent_grade = None

    def calculate_realistic_grade(
        self, raw_grade: float, speed_kph: float, distance: float
    ) -> float:
        now = self._clock.now_ms()
        state = self.state
        if state is None:
            self.state = GradeState(
                current_grade=raw_grade,
                target_grade=raw_grade,
                last_update_ms=now,
                last_update_distance=distance,
            )
            return raw_grade

        traveled = distance - state.last_update_distance
        ramp_point = traveled >= GRADIENT_RAMP_DISTANCE_M
        if ramp_point:
            step = _clamp(
                raw_grade - state.current_grade,
                -MAX_GRADE_CHANGE_PER_RAMP,
                MAX_GRADE_CHANGE_PER_RAMP,
            )
            state.target_grade = state.current_grade + step
            state.last_update_distance = distance
            _LOGGER.debug(
                "[GRADE RAMP] %.0fm: %.1f%% -> %.1f%% (raw: %.1f%%)",
                traveled,
                state.current_grade,
                state.target_grade,
                raw_grade,
            )
        else:
            state.target_grade = state.current_grade

        if ramp_point:
            max_change = abs(state.target_grade - state.current_grade)
        else:
            elapsed_sec = (now - state.last_update_ms) / 1000.0
            max_change = max(MIN_GRADE_CHANGE_PER_TICK, elapsed_sec * MAX_GRADE_CHANGE_PER_SECOND)

        change = _clamp(state.target_grade - state.current_grade, -max_change, max_change)
        updated = state.current_grade + change

        momentum_factor = min(1.0, speed_kph / MOMENTUM_FULL_SPEED_KPH)
        assisted = updated * (1 - MOMENTUM_MAX_REDUCTION * momentum_factor)
        applied = max(DOWNHILL_GRADE_FLOOR, assisted)

        state.current_grade = updated
        state.last_update_ms = now
        return applied

    def should_send(self, grade: float) -> bool:
        """Command gate: at most one send per 3 s, and only for a 0.3-point change."""
        now = self._clock.now_ms()
        if self._last_sent_ms is not None and now - self._last_sent_ms < COMMAND_INTERVAL_MS:
            return False
        if (
            self._last_sent_grade is not None
            and abs(grade - self._last_sent_grade) < MIN_COMMAND_DELTA_PCT
        ):
            return False
        self._last_sent_ms = now
        self._last_sent_grade = grade
        return True
