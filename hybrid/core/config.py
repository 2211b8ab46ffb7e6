"""Ride tunables shared by the engine, the scheduler and the CLI."""

from __future__ import annotations

from dataclasses import dataclass

from hybrid.ble.constants import DEFAULT_ACK_TIMEOUT_MS


@dataclass(frozen=True)
class RideSettings:
    ack_timeout_ms: float = DEFAULT_ACK_TIMEOUT_MS
    ftp_watts: int = 250

    # SIM physics sent with every grade
    crr: float = 0.003
    cda: float = 0.45
    wind_mps: float = 0.0

    # SIM step timing
    sim_update_interval_ms: float = 2000.0
    sim_settle_delay_ms: float = 250.0
    sim_entry_ramp_step_pct: float = 1.0
    sim_entry_ramp_dwell_ms: float = 1800.0
    sim_entry_ramp_span_pct: float = 2.0

    def __post_init__(self) -> None:
        if self.ack_timeout_ms <= 0:
            raise ValueError("ack_timeout_ms must be > 0")
        if self.ftp_watts <= 0:
            raise ValueError("ftp_watts must be > 0")
        if self.sim_entry_ramp_step_pct <= 0:
            raise ValueError("sim_entry_ramp_step_pct must be > 0")
