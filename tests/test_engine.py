from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from hybrid.ble.commands import SetTargetPower
from hybrid.ble.transport import SIM_DEVICE_LABEL, SimulatedTrainerTransport
from hybrid.core.clock import ManualClock
from hybrid.core.engine import RideEngine
from hybrid.workout.model import ErgStep, WorkoutPlan
from hybrid.workout.session_store import load_recent_workouts


def test_engine_runs_plan_to_completion_and_saves(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    async def _run() -> None:
        clock = ManualClock()
        transport = SimulatedTrainerTransport(clock)
        store = tmp_path / "workouts.jsonl"
        engine = RideEngine(
            transport,
            clock=clock,
            save_summary=True,
            summary_path=store,
        )
        plan = WorkoutPlan("Short", (ErgStep(duration_min=1, power_watts=180),))

        task = asyncio.create_task(engine.run(target="auto", plan=plan))
        await clock.advance(65000)
        summary = await asyncio.wait_for(task, timeout=1.0)

        assert summary is not None
        assert len(summary.steps) == 1
        assert summary.steps[0].planned_duration == 60
        assert summary.total_time == pytest.approx(60)
        assert engine.state.connected_device == SIM_DEVICE_LABEL
        assert engine.state.step_label == "1: ERG 180W"
        assert engine.state.last_power_watts is not None
        assert SetTargetPower(watts=180) in transport.commands
        assert transport.commands[-1] == SetTargetPower(watts=0)
        assert not engine.client.is_connected
        assert load_recent_workouts(path=store) == [summary]

    asyncio.run(_run())

    out = capsys.readouterr().out
    assert f"Connected to {SIM_DEVICE_LABEL}" in out
    assert "Workout complete: 1.0 min" in out
    assert "Power: " in out


def test_engine_fixed_erg_until_stopped(capsys: pytest.CaptureFixture[str]) -> None:
    async def _run() -> None:
        clock = ManualClock()
        transport = SimulatedTrainerTransport(clock)
        engine = RideEngine(transport, clock=clock, startup_wait_seconds=1.0)

        task = asyncio.create_task(engine.run(target="auto", erg_watts=210))
        await clock.advance(5000)
        engine.stop()
        await clock.advance(1000)
        summary = await asyncio.wait_for(task, timeout=1.0)

        assert summary is None
        assert SetTargetPower(watts=210) in transport.commands
        assert not transport.is_connected

    asyncio.run(_run())

    assert "ERG target set to 210W (startup trainer signal)" in capsys.readouterr().out


def test_engine_reports_trainer_drop(capsys: pytest.CaptureFixture[str]) -> None:
    async def _run() -> None:
        clock = ManualClock()
        transport = SimulatedTrainerTransport(clock)
        engine = RideEngine(transport, clock=clock)
        plan = WorkoutPlan("Long", (ErgStep(duration_min=30, power_watts=150),))

        task = asyncio.create_task(engine.run(target="auto", plan=plan))
        await clock.advance(3000)
        transport.drop()
        await clock.advance(1000)
        summary = await asyncio.wait_for(task, timeout=1.0)

        assert summary is not None
        assert summary.steps[0].actual_duration == pytest.approx(4)
        assert summary.steps[0].planned_duration == 1800

    asyncio.run(_run())

    assert "Trainer disconnected" in capsys.readouterr().out


def test_deferred_erg_is_sent_on_next_trainer_signal(capsys: pytest.CaptureFixture[str]) -> None:
    async def _run() -> None:
        clock = ManualClock()
        transport = SimulatedTrainerTransport(clock)
        engine = RideEngine(transport, clock=clock)
        await engine.client.connect("auto")
        await clock.settle()
        engine._deferred_erg_watts = 220

        await clock.advance(1000)

        assert SetTargetPower(watts=220) in transport.commands
        assert engine._deferred_erg_watts is None
        assert not engine._tasks
        await engine.client.disconnect()

    asyncio.run(_run())

    assert "ERG target set to 220W (first trainer signal)" in capsys.readouterr().out
