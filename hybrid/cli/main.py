"""Terminal CLI entrypoint for the FTMS hybrid trainer controller."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from hybrid.ble.errors import FTMSError
from hybrid.ble.transport import (
    SIM_DEVICE_LABEL,
    BleakTransport,
    GattTransport,
    SimulatedTrainerTransport,
)
from hybrid.core.config import RideSettings
from hybrid.core.engine import RideEngine
from hybrid.route.loader import RouteDataError, load_route
from hybrid.route.profile import RouteProfile
from hybrid.workout.model import SimStep, WorkoutPlan
from hybrid.workout.parser import WorkoutParseError, load_workout

_LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FTMS hybrid ERG/SIM trainer controller")
    parser.add_argument("--scan", action="store_true", help="Scan BLE devices")
    parser.add_argument(
        "--connect",
        nargs="?",
        const="auto",
        default=None,
        help="Connect to first FTMS device or the provided BLE address/name",
    )
    parser.add_argument("--erg", type=int, default=None, help="Set fixed ERG target in watts")
    parser.add_argument(
        "--workout",
        type=Path,
        default=None,
        help="Run an ERG/SIM workout plan (.json or .csv)",
    )
    parser.add_argument(
        "--route",
        type=Path,
        action="append",
        default=[],
        help="Route JSON used by SIM steps (repeatable, matched by route name)",
    )
    parser.add_argument("--ftp", type=int, default=250, help="FTP in watts for virtual gearing")
    parser.add_argument(
        "--ack-timeout",
        type=float,
        default=4000.0,
        help="Control Point ack timeout in milliseconds",
    )
    parser.add_argument(
        "--startup-wait",
        type=float,
        default=30.0,
        help="Seconds to wait for first trainer signal before sending ERG command",
    )
    parser.add_argument(
        "--save-summary",
        action="store_true",
        help="Append the workout summary to ~/.ftms-hybrid/workouts.jsonl",
    )
    parser.add_argument(
        "--debug-ftms",
        action="store_true",
        help="Log raw FTMS payloads, writes and acks",
    )
    parser.add_argument(
        "--debug-sim-ht",
        action="store_true",
        help="Simulate a home trainer (no BLE required) for debug/testing",
    )
    return parser


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if not debug:
        logging.getLogger("bleak").setLevel(logging.WARNING)


def build_transport(simulate_ht: bool) -> GattTransport:
    if simulate_ht:
        return SimulatedTrainerTransport()
    return BleakTransport()


def load_routes(paths: list[Path]) -> dict[str, RouteProfile]:
    routes: dict[str, RouteProfile] = {}
    for path in paths:
        route = load_route(path)
        routes[route.name] = route
        _LOGGER.info(
            "Route loaded: %s (%d points, %.0fm, avg %.1f%%)",
            route.name,
            len(route),
            route.total_distance,
            route.average_grade,
        )
    return routes


def bind_routes(plan: WorkoutPlan, routes: dict[str, RouteProfile]) -> dict[str, RouteProfile]:
    """With a single route loaded, every SIM step rides it whatever its segment name."""
    if len(routes) != 1:
        return routes
    only = next(iter(routes.values()))
    bound = dict(routes)
    for step in plan.steps:
        if isinstance(step, SimStep) and step.segment_name not in bound:
            _LOGGER.info("SIM step %r rides route %s", step.segment_name, only.name)
            bound[step.segment_name] = only
    return bound


async def run_scan(simulate_ht: bool = False) -> int:
    if simulate_ht:
        print(f"{SIM_DEVICE_LABEL:<24} RSSI= -40 [FTMS]")
        return 0

    devices = await BleakTransport().scan(timeout=5.0)
    if not devices:
        print("No BLE devices found")
        return 0

    for device in devices:
        ftms_flag = "FTMS" if device.has_ftms else "-"
        brand = f" {device.manufacturer}" if device.manufacturer else ""
        print(f"{device.name:<24} {device.address} RSSI={device.rssi:>4} [{ftms_flag}]{brand}")
    return 0


async def run_connect(
    connect_target: str | None,
    erg_watts: int | None,
    plan: WorkoutPlan | None,
    routes: dict[str, RouteProfile],
    settings: RideSettings,
    simulate_ht: bool,
    startup_wait: float,
    save_summary: bool,
) -> int:
    engine = RideEngine(
        build_transport(simulate_ht),
        settings=settings,
        routes=routes,
        startup_wait_seconds=startup_wait,
        save_summary=save_summary,
    )

    try:
        await engine.run(target=connect_target, erg_watts=erg_watts, plan=plan)
    except KeyboardInterrupt:
        engine.stop()
    except (FTMSError, RouteDataError) as exc:
        print(f"Error: {exc}")
        return 1
    return 0


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.debug_ftms)

    if args.scan:
        return asyncio.run(run_scan(args.debug_sim_ht))

    try:
        settings = RideSettings(ack_timeout_ms=args.ack_timeout, ftp_watts=args.ftp)
        routes = load_routes(args.route)
        plan = load_workout(args.workout) if args.workout is not None else None
    except (WorkoutParseError, ValueError, OSError) as exc:
        print(f"Error: {exc}")
        return 1
    if plan is not None:
        routes = bind_routes(plan, routes)

    connect_target = args.connect
    if (args.erg is not None or plan is not None) and connect_target is None:
        connect_target = "auto"

    if connect_target is None:
        parser.print_help()
        return 1

    return asyncio.run(
        run_connect(
            connect_target,
            args.erg,
            plan,
            routes,
            settings,
            args.debug_sim_ht,
            args.startup_wait,
            args.save_summary,
        )
    )


if __name__ == "__main__":
    raise SystemExit(main())
