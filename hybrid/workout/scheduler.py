"""Workout execution: sequences ERG and SIM steps against an FTMS trainer."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from hybrid.ble.errors import FTMSError
from hybrid.ble.ftms_client import IndoorBikeData
from hybrid.core.clock import AsyncioClock, Clock, TimerHandle
from hybrid.core.config import RideSettings
from hybrid.core.events import EventStream
from hybrid.gearing.virtual_gear import VirtualGearing
from hybrid.route.loader import RouteDataError
from hybrid.route.profile import RouteProfile
from hybrid.sim.gradient import GradientSimulator
from hybrid.workout.model import (
    ErgStep,
    SimStep,
    StepStarted,
    StepSummary,
    WorkoutPlan,
    WorkoutStep,
    WorkoutSummary,
)

_LOGGER = logging.getLogger(__name__)

# Failures a device command may raise; none of them may block a transition.
_COMMAND_ERRORS = (FTMSError, RuntimeError, ValueError)


class TrainerLink(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def set_target_power(self, watts: float) -> int: ...

    async def set_simulation_parameters(
        self, grade_pct: float, crr: float = ..., cda: float = ..., wind_mps: float = ...
    ) -> int: ...

    async def ramp_simulation(
        self,
        from_pct: float,
        to_pct: float,
        step_pct: float = ...,
        dwell_ms: float = ...,
        crr: float = ...,
        cda: float = ...,
        wind_mps: float = ...,
    ) -> list[float]: ...


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"


class WorkoutScheduler:
    """Runs one workout plan at a time.

    Step transitions are synchronous: accumulators are reset and timers are
    re-armed before any device command is dispatched, so telemetry that
    arrives while a command is in flight always lands on the new step. Device
    commands run as background tasks; their failures are logged and never
    hold up the plan.
    """

    def __init__(
        self,
        link: TrainerLink,
        routes: Mapping[str, RouteProfile],
        *,
        clock: Clock | None = None,
        settings: RideSettings | None = None,
        gearing: VirtualGearing | None = None,
        simulator: GradientSimulator | None = None,
    ) -> None:
        self._link = link
        self._routes = dict(routes)
        self._clock = clock or AsyncioClock()
        self._settings = settings or RideSettings()
        self._gearing = gearing
        self._simulator = simulator or GradientSimulator(self._clock)

        self.step_started: EventStream[StepStarted] = EventStream("step-started")
        self.step_completed: EventStream[StepSummary] = EventStream("step-completed")
        self.workout_completed: EventStream[WorkoutSummary] = EventStream("workout-completed")
        self.route_completed: EventStream[int] = EventStream("route-completed")

        self._state = SchedulerState.IDLE
        self._plan: Optional[WorkoutPlan] = None
        self._step_index = 0
        self._generation = 0
        self._workout_start_ms = 0.0
        self._step_start_ms = 0.0
        self._step_recorded = False
        self._summaries: list[StepSummary] = []
        self._summary: Optional[WorkoutSummary] = None

        self._deadline: Optional[TimerHandle] = None
        self._step_tasks: set[asyncio.Task[Any]] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

        self._last_speed_kph = 0.0
        self._reset_sim_accumulators()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def step_index(self) -> int:
        return self._step_index

    @property
    def current_step(self) -> Optional[WorkoutStep]:
        if not self.is_running or self._plan is None:
            return None
        return self._plan.steps[self._step_index]

    @property
    def route_distance(self) -> float:
        return self._route_distance

    @property
    def step_distance(self) -> float:
        return self._step_distance

    @property
    def route_completed_flag(self) -> bool:
        return self._route_completed

    @property
    def ramping(self) -> bool:
        return self._ramping

    @property
    def last_grade(self) -> Optional[float]:
        return self._last_grade

    @property
    def summaries(self) -> tuple[StepSummary, ...]:
        return tuple(self._summaries)

    @property
    def summary(self) -> Optional[WorkoutSummary]:
        return self._summary

    async def start(self, plan: WorkoutPlan) -> None:
        if self.is_running:
            raise RuntimeError("Workout already running")
        if not plan.steps:
            raise ValueError("Workout plan has no steps")
        if not self._link.is_connected:
            raise RuntimeError("Not connected")
        for name in sorted(plan.segment_names):
            route = self._routes.get(name)
            if route is None:
                raise RouteDataError(f"Unknown route for SIM step: {name!r}")
            if len(route) == 0:
                raise RouteDataError(f"Route {name!r} has no points")

        self._plan = plan
        self._state = SchedulerState.RUNNING
        self._step_index = 0
        self._summaries = []
        self._summary = None
        self._workout_start_ms = self._clock.now_ms()
        _LOGGER.info("=== WORKOUT STARTED: %s (%d steps) ===", plan.name, len(plan.steps))
        self._enter_step()

    def skip(self) -> bool:
        """Finish the current step and move on. False when nothing is running."""
        if not self.is_running or self._plan is None:
            return False
        self._exit_step()
        self._step_index += 1
        if self._step_index >= len(self._plan.steps):
            self.end_workout()
        else:
            self._enter_step()
        return True

    def end_workout(self) -> WorkoutSummary:
        if self._state is SchedulerState.COMPLETE and self._summary is not None:
            return self._summary
        if not self.is_running or self._plan is None:
            raise RuntimeError("Workout not running")

        if self._step_index < len(self._plan.steps) and not self._step_recorded:
            self._exit_step()
        else:
            self._cancel_step_work()
        self._state = SchedulerState.COMPLETE
        self._spawn(self._command("zero power", self._link.set_target_power, 0))

        total_time = (self._clock.now_ms() - self._workout_start_ms) / 1000.0
        total_distance = sum(step.distance for step in self._summaries)
        average_speed = (
            total_distance / total_time * 3.6 if total_distance > 0 and total_time > 0 else 0.0
        )
        summary = WorkoutSummary(
            total_time=total_time,
            total_distance=total_distance,
            average_speed=average_speed,
            steps=tuple(self._summaries),
            timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )
        self._summary = summary
        _LOGGER.info(
            "=== WORKOUT COMPLETE: %.1f min, %.2f km, %.1f kph avg, %d steps ===",
            total_time / 60,
            total_distance / 1000,
            average_speed,
            len(summary.steps),
        )
        self.workout_completed.emit(summary)
        return summary

    async def drain(self) -> None:
        """Wait for every device command dispatched so far to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def handle_telemetry(self, sample: IndoorBikeData) -> None:
        speed = sample.instantaneous_speed_kmh
        if speed is not None and math.isfinite(speed):
            self._last_speed_kph = speed
        step = self.current_step
        if not isinstance(step, SimStep):
            return

        now = self._clock.now_ms()
        if now - self._last_tick_ms < self._settings.sim_update_interval_ms:
            return
        dt_sec = (now - self._last_tick_ms) / 1000.0
        self._last_tick_ms = now

        speed_kph = self._last_speed_kph
        increment = speed_kph * 1000 / 3600 * dt_sec
        self._step_distance += increment

        route = self._routes[step.segment_name]
        total = route.total_distance
        if self._route_distance < total:
            self._route_distance = max(0.0, min(total, self._route_distance + increment))
            if self._route_distance >= total and not self._route_completed:
                self._route_completed = True
                _LOGGER.info(
                    "[SIM ROUTE COMPLETE] Finished %s at %.0fm, holding final grade",
                    route.name,
                    total,
                )
                self.route_completed.emit(self._step_index + 1)

        raw_grade = route.grade_at_distance(self._route_distance)
        grade = self._simulator.calculate_realistic_grade(
            raw_grade, speed_kph, self._route_distance
        )
        grade = self._geared_grade(grade)
        self._last_grade = grade
        _LOGGER.debug(
            "[SIM] route=%.0fm total=%.0fm raw=%.2f%% applied=%.2f%%%s",
            self._route_distance,
            self._step_distance,
            raw_grade,
            grade,
            " [ROUTE COMPLETE]" if self._route_completed else "",
        )

        if self._ramping or not self._simulator.should_send(grade):
            return
        self._spawn_step(
            self._command(f"SIM grade {grade:.2f}%", self._send_grade, grade)
        )

    def _enter_step(self) -> None:
        assert self._plan is not None
        self._cancel_step_work()
        self._generation += 1
        self._step_start_ms = self._clock.now_ms()
        self._step_recorded = False
        self._reset_sim_accumulators()

        step = self._plan.steps[self._step_index]
        number = self._step_index + 1
        _LOGGER.info(
            "--- STEP %d/%d: %s ---", number, len(self._plan.steps), step.type.upper()
        )

        if isinstance(step, ErgStep):
            generation = self._generation
            self._deadline = self._clock.call_later(
                step.duration_min * 60000, lambda: self._on_deadline(generation)
            )
            watts = self._gearing.apply_to_power(step.power_watts) if self._gearing else step.power_watts
            _LOGGER.info("ERG: %sW for %s minutes", watts, step.duration_min)
            self._spawn_step(self._command(f"ERG {watts}W", self._link.set_target_power, watts))
        else:
            self._simulator.reset(start_grade=0.0)
            self._ramping = True
            route = self._routes[step.segment_name]
            _LOGGER.info(
                "SIM: following route %s (%.0fm total)", route.name, route.total_distance
            )
            self._spawn_step(self._enter_sim(route, self._generation))

        self.step_started.emit(StepStarted(step_number=number, step=step))

    async def _enter_sim(self, route: RouteProfile, generation: int) -> None:
        settings = self._settings
        await self._command("zero power before SIM", self._link.set_target_power, 0)
        await self._clock.sleep(settings.sim_settle_delay_ms)

        target = self._geared_grade(route.grade_at_distance(0))
        start = math.copysign(max(0.0, abs(target) - settings.sim_entry_ramp_span_pct), target)
        try:
            await self._link.ramp_simulation(
                start,
                target,
                step_pct=settings.sim_entry_ramp_step_pct,
                dwell_ms=settings.sim_entry_ramp_dwell_ms,
                crr=settings.crr,
                cda=settings.cda,
                wind_mps=settings.wind_mps,
            )
        except _COMMAND_ERRORS as exc:
            _LOGGER.warning("SIM: ramp failed, setting direct grade: %s", exc)
            await self._command(f"SIM grade {target:.2f}%", self._send_grade, target)
        finally:
            if generation == self._generation:
                self._ramping = False

    def _exit_step(self) -> None:
        assert self._plan is not None
        self._cancel_step_work()
        step = self._plan.steps[self._step_index]
        actual = (self._clock.now_ms() - self._step_start_ms) / 1000.0

        if isinstance(step, SimStep):
            distance = self._step_distance
        else:
            distance = (self._last_speed_kph / 3.6) * actual
        if distance < 0:
            _LOGGER.warning(
                "Negative distance for step %d: %.2fm, corrected to 0",
                self._step_index + 1,
                distance,
            )
            distance = 0.0

        is_sim = isinstance(step, SimStep)
        summary = StepSummary(
            step_number=self._step_index + 1,
            type=step.type,
            planned_duration=None if is_sim else step.duration_min * 60,
            actual_duration=actual,
            distance=distance,
            average_speed_kph=distance / actual * 3.6 if distance > 0 and actual > 0 else 0.0,
            target="Route Grade" if is_sim else f"{step.power_watts:g}W",
            segment_name=step.segment_name if is_sim else None,
            route_distance=self._route_distance if is_sim else None,
            route_completed=self._route_completed if is_sim else None,
        )
        self._summaries.append(summary)
        self._step_recorded = True
        _LOGGER.info(
            "STEP %d COMPLETE: %s | %.1f min | %.2f km | %.1f kph avg",
            summary.step_number,
            summary.type.upper(),
            summary.actual_duration / 60,
            summary.distance / 1000,
            summary.average_speed_kph,
        )
        self.step_completed.emit(summary)

    def _on_deadline(self, generation: int) -> None:
        if generation != self._generation or not self.is_running:
            return
        self._deadline = None
        self.skip()

    def _reset_sim_accumulators(self) -> None:
        self._route_distance = 0.0
        self._step_distance = 0.0
        self._route_completed = False
        self._ramping = False
        self._last_grade: Optional[float] = None
        self._last_tick_ms = self._step_start_ms

    def _cancel_step_work(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        for task in list(self._step_tasks):
            task.cancel()
        self._step_tasks.clear()

    def _geared_grade(self, grade: float) -> float:
        return self._gearing.apply_to_gradient(grade) if self._gearing else grade

    async def _send_grade(self, grade: float) -> int:
        settings = self._settings
        return await self._link.set_simulation_parameters(
            grade, crr=settings.crr, cda=settings.cda, wind_mps=settings.wind_mps
        )

    async def _command(
        self, what: str, send: Callable[..., Awaitable[Any]], *args: Any
    ) -> None:
        try:
            await send(*args)
        except _COMMAND_ERRORS as exc:
            _LOGGER.warning("%s failed: %s", what, exc)

    def _spawn_step(self, coro: Awaitable[Any]) -> None:
        task = self._spawn(coro)
        self._step_tasks.add(task)
        task.add_done_callback(self._step_tasks.discard)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
