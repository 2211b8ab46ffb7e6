"""Virtual gearing: a 2x11 road drivetrain mapped onto SIM grade and ERG power."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from hybrid.core.events import EventStream

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Gear:
    index: int
    front: int
    rear: int
    ratio: float

    @property
    def display(self) -> str:
        return f"{self.front}/{self.rear}"


def _build_gear_table() -> tuple[Gear, ...]:
    # 50/34 chainrings, 11-28 cassette; ordered easiest to hardest by ratio.
    combos = [
        (34, 28, 1.21), (34, 25, 1.36), (34, 23, 1.48), (34, 21, 1.62),
        (34, 19, 1.79), (50, 28, 1.79), (34, 17, 2.00), (50, 25, 2.00),
        (50, 23, 2.17), (34, 15, 2.27), (50, 21, 2.38), (34, 14, 2.43),
        (34, 13, 2.62), (50, 19, 2.63), (34, 12, 2.83), (50, 17, 2.94),
        (34, 11, 3.09), (50, 15, 3.33), (50, 14, 3.57), (50, 13, 3.85),
        (50, 12, 4.17), (50, 11, 4.55),
    ]
    return tuple(
        Gear(index=i, front=front, rear=rear, ratio=ratio)
        for i, (front, rear, ratio) in enumerate(combos)
    )


GEAR_TABLE: tuple[Gear, ...] = _build_gear_table()
BASELINE_GEAR_INDEX = 10  # 50/21
DEFAULT_FTP_WATTS = 250

MIN_GRADIENT_PCT, MAX_GRADIENT_PCT = -10.0, 20.0
MIN_POWER_WATTS, MAX_POWER_WATTS = 50, 2000


@dataclass(frozen=True)
class GearState:
    gear: Gear
    multiplier: float

    @property
    def number(self) -> int:
        return self.gear.index + 1


class VirtualGearing:
    def __init__(
        self,
        ftp_watts: int = DEFAULT_FTP_WATTS,
        enabled: bool = True,
        baseline_index: int = BASELINE_GEAR_INDEX,
    ) -> None:
        if ftp_watts <= 0:
            raise ValueError("FTP must be > 0")
        if not 0 <= baseline_index < len(GEAR_TABLE):
            raise ValueError(f"Baseline gear must be 0..{len(GEAR_TABLE) - 1}")
        self.ftp_watts = ftp_watts
        self.enabled = enabled
        self.baseline_index = baseline_index
        self._index = baseline_index
        self.gear_changes: EventStream[GearState] = EventStream("gear-change")

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current_gear(self) -> Gear:
        return GEAR_TABLE[self._index]

    @property
    def multiplier(self) -> float:
        return GEAR_TABLE[self._index].ratio / GEAR_TABLE[self.baseline_index].ratio

    def state(self) -> GearState:
        return GearState(gear=self.current_gear, multiplier=self.multiplier)

    def shift_up(self) -> bool:
        """Harder gear. False when already in the hardest gear."""
        if self._index >= len(GEAR_TABLE) - 1:
            return False
        self._index += 1
        self._announce("UP")
        return True

    def shift_down(self) -> bool:
        """Easier gear. False when already in the easiest gear."""
        if self._index <= 0:
            return False
        self._index -= 1
        self._announce("DOWN")
        return True

    def apply_to_gradient(self, grade_pct: float) -> float:
        if not self.enabled:
            return grade_pct
        return max(MIN_GRADIENT_PCT, min(MAX_GRADIENT_PCT, grade_pct * self.multiplier))

    def apply_to_power(self, watts: float) -> float:
        if not self.enabled:
            return watts
        return round(max(MIN_POWER_WATTS, min(MAX_POWER_WATTS, watts * self.multiplier)))

    def calculate_target_power(self, cadence_rpm: float = 90.0) -> float:
        """Baseline gear at 90 rpm is 75% FTP; power scales with ratio and cadence^1.5."""
        cadence_ratio = max(0.0, cadence_rpm) / 90.0
        return self.ftp_watts * 0.75 * self.multiplier * cadence_ratio ** 1.5

    def _announce(self, direction: str) -> None:
        state = self.state()
        _LOGGER.info(
            "[VirtualGear] Shifted %s to gear %d (%s)",
            direction,
            state.number,
            state.gear.display,
        )
        self.gear_changes.emit(state)
