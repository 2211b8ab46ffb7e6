"""Async runtime engine: one trainer, one workout, printed in the terminal."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional

from hybrid.ble.errors import FTMSError
from hybrid.ble.ftms_client import FTMSClient, IndoorBikeData
from hybrid.ble.transport import GattTransport
from hybrid.core.clock import AsyncioClock, Clock
from hybrid.core.config import RideSettings
from hybrid.core.state import EngineState
from hybrid.gearing.virtual_gear import GearState, VirtualGearing
from hybrid.route.profile import RouteProfile
from hybrid.workout.model import ErgStep, StepStarted, WorkoutPlan, WorkoutSummary
from hybrid.workout.scheduler import SchedulerState, WorkoutScheduler
from hybrid.workout.session_store import append_workout_summary

_LOGGER = logging.getLogger(__name__)


class RideEngine:
    def __init__(
        self,
        transport: GattTransport,
        *,
        settings: RideSettings | None = None,
        routes: Mapping[str, RouteProfile] | None = None,
        clock: Clock | None = None,
        gearing: VirtualGearing | None = None,
        startup_wait_seconds: float = 30.0,
        save_summary: bool = False,
        summary_path: Path | None = None,
    ) -> None:
        self.settings = settings or RideSettings()
        self._clock = clock or AsyncioClock()
        self.client = FTMSClient(
            transport, clock=self._clock, ack_timeout_ms=self.settings.ack_timeout_ms
        )
        self.gearing = gearing or VirtualGearing(ftp_watts=self.settings.ftp_watts)
        self.scheduler = WorkoutScheduler(
            self.client,
            routes or {},
            clock=self._clock,
            settings=self.settings,
            gearing=self.gearing,
        )
        self.state = EngineState(gear_label=self.gearing.current_gear.display)
        self._stop_event = asyncio.Event()
        self._first_metrics_event = asyncio.Event()
        self._startup_wait_seconds = startup_wait_seconds
        self._deferred_erg_watts: int | None = None
        self._save_summary = save_summary
        self._summary_path = summary_path
        self._tasks: set[asyncio.Task[None]] = set()

        self.client.telemetry.subscribe(self._on_metrics)
        self.scheduler.step_started.subscribe(self._on_step_started)
        self.gearing.gear_changes.subscribe(self._on_gear_change)

    async def run(
        self,
        target: str | None = None,
        erg_watts: int | None = None,
        plan: WorkoutPlan | None = None,
    ) -> Optional[WorkoutSummary]:
        summary: Optional[WorkoutSummary] = None
        try:
            session = await self.client.connect(target)
            self.state.connected_device = session.label
            print(f"Connected to {session.label}")

            if plan is not None:
                await self.scheduler.start(plan)
            elif erg_watts is not None:
                await self._set_erg_with_startup_wait(erg_watts)

            while not self._stop_event.is_set():
                self._print_metrics_line()
                if plan is not None and self.scheduler.state is SchedulerState.COMPLETE:
                    break
                if not self.client.is_connected:
                    print("Trainer disconnected")
                    break
                await self._clock.sleep(1000)

            if plan is not None:
                summary = self._finish_workout()
                await self.scheduler.drain()
        finally:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            await self.client.disconnect()
        return summary

    def stop(self) -> None:
        self._stop_event.set()

    def _finish_workout(self) -> WorkoutSummary:
        if self.scheduler.is_running:
            summary = self.scheduler.end_workout()
        else:
            summary = self.scheduler.summary
            assert summary is not None
        print(
            f"Workout complete: {summary.total_time / 60:.1f} min | "
            f"{summary.total_distance / 1000:.2f} km | {summary.average_speed:.1f} kph"
        )
        if self._save_summary:
            path = append_workout_summary(summary, self._summary_path)
            print(f"Summary saved to {path}")
        return summary

    def _on_metrics(self, metrics: IndoorBikeData) -> None:
        self.state.last_power_watts = metrics.instantaneous_power
        self.state.last_cadence_rpm = metrics.instantaneous_cadence
        self.state.last_speed_kmh = metrics.instantaneous_speed_kmh
        self.state.last_update = datetime.now(timezone.utc)
        self._first_metrics_event.set()
        self.scheduler.handle_telemetry(metrics)

        if self._deferred_erg_watts is not None:
            watts = self._deferred_erg_watts
            self._deferred_erg_watts = None
            task = asyncio.ensure_future(self._try_set_erg(watts, reason="first trainer signal"))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _on_step_started(self, event: StepStarted) -> None:
        step = event.step
        if isinstance(step, ErgStep):
            detail = f"ERG {step.power_watts:g}W"
        else:
            detail = f"SIM {step.segment_name}"
        self.state.step_label = f"{event.step_number}: {step.label or detail}"

    def _on_gear_change(self, gear: GearState) -> None:
        self.state.gear_label = gear.gear.display

    def _print_metrics_line(self) -> None:
        power = (
            f"{self.state.last_power_watts} W"
            if self.state.last_power_watts is not None
            else "N/A"
        )
        cadence = (
            f"{self.state.last_cadence_rpm:.1f} rpm"
            if self.state.last_cadence_rpm is not None
            else "N/A"
        )
        speed = (
            f"{self.state.last_speed_kmh:.1f} km/h"
            if self.state.last_speed_kmh is not None
            else "N/A"
        )
        line = f"Power: {power} | Cadence: {cadence} | Speed: {speed} | Gear: {self.state.gear_label}"
        if self.state.step_label is not None:
            line += f" | Step {self.state.step_label}"
        print(line)

    async def _set_erg_with_startup_wait(self, watts: int) -> None:
        print(
            f"Waiting up to {self._startup_wait_seconds:.0f}s for trainer signal before ERG..."
        )
        try:
            await asyncio.wait_for(
                self._first_metrics_event.wait(),
                timeout=self._startup_wait_seconds,
            )
            await self._try_set_erg(watts, reason="startup trainer signal")
        except asyncio.TimeoutError:
            self._deferred_erg_watts = watts
            print(
                f"Warning: no trainer signal after {self._startup_wait_seconds:.0f}s. "
                "Will retry ERG on first signal."
            )

    async def _try_set_erg(self, watts: int, reason: str) -> None:
        try:
            await self.client.set_target_power(watts)
            print(f"ERG target set to {watts}W ({reason})")
        except (FTMSError, RuntimeError, ValueError) as exc:
            _LOGGER.warning("ERG target %sW refused: %s", watts, exc)
            print(
                f"Warning: ERG target {watts}W refused by trainer ({exc}). "
                "Continuing without ERG control."
            )
