"""Async FTMS link: device session, Control Point command/ack protocol, telemetry."""

from __future__ import annotations

import asyncio
import logging
import math
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from hybrid.ble.commands import (
    ControlPointCommand,
    ControlPointResponse,
    RequestControl,
    SetSimulationParameters,
    SetTargetPower,
)
from hybrid.ble.constants import (
    DEFAULT_ACK_TIMEOUT_MS,
    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
    FITNESS_MACHINE_FEATURE_CHAR_UUID,
    FITNESS_MACHINE_STATUS_CHAR_UUID,
    FTMS_SERVICE_UUID,
    INDOOR_BIKE_DATA_CHAR_UUID,
    MAX_TARGET_POWER_WATTS,
    OP_REQUEST_CONTROL,
    REQUIRED_FTMS_CHARACTERISTICS,
    TRAINING_STATUS_CHAR_UUID,
    VENDOR_OBSERVED_CHARACTERISTICS,
    VENDOR_SERVICE_UUID,
    IndoorBikeDataFlags,
    parse_indoor_bike_flags,
)
from hybrid.ble.errors import (
    CommandCancelledError,
    CommandSupersededError,
    CommandTimeoutError,
    DeviceConnectionError,
    DeviceRejectedError,
    FTMSError,
    TransportWriteError,
    ValidationError,
)
from hybrid.ble.transport import GattTransport
from hybrid.core.clock import AsyncioClock, Clock, TimerHandle
from hybrid.core.events import EventStream

_LOGGER = logging.getLogger(__name__)

DEFAULT_CRR = 0.004
DEFAULT_CDA = 0.51


def _hex(payload: bytes) -> str:
    return payload.hex(" ").upper()


@dataclass(frozen=True)
class IndoorBikeData:
    instantaneous_power: Optional[int] = None
    instantaneous_cadence: Optional[float] = None
    instantaneous_speed_kmh: Optional[float] = None
    flags: int = 0
    raw: bytes = b""

    @property
    def parsed_flags(self) -> IndoorBikeDataFlags:
        return parse_indoor_bike_flags(self.flags)


def parse_indoor_bike_data(payload: bytes) -> IndoorBikeData:
    """Parse an FTMS Indoor Bike Data notification (0x2AD2).

    Flags come first; speed, cadence and power then follow in that order for
    as long as the payload has bytes for them. A field without bytes is None.
    """
    if len(payload) < 2:
        raise ValueError("Indoor Bike Data payload too short")

    flags = struct.unpack_from("<H", payload, 0)[0]
    cursor = 2

    speed_kmh: Optional[float] = None
    if len(payload) >= cursor + 2:
        speed_kmh = struct.unpack_from("<H", payload, cursor)[0] / 100.0
        cursor += 2

    cadence: Optional[float] = None
    if len(payload) >= cursor + 2:
        cadence = struct.unpack_from("<H", payload, cursor)[0] / 2.0
        cursor += 2

    power: Optional[int] = None
    if len(payload) >= cursor + 2:
        power = struct.unpack_from("<h", payload, cursor)[0]

    return IndoorBikeData(
        instantaneous_power=power,
        instantaneous_cadence=cadence,
        instantaneous_speed_kmh=speed_kmh,
        flags=flags,
        raw=bytes(payload),
    )


def ramp_grades(from_pct: float, to_pct: float, step_pct: float) -> list[float]:
    """Grades visited when walking from ``from_pct`` to ``to_pct``.

    The last entry is always exactly ``to_pct``.
    """
    if not step_pct > 0:
        raise ValidationError(f"Ramp step must be > 0, got {step_pct}")
    direction = 1 if to_pct >= from_pct else -1
    grades: list[float] = []
    grade = from_pct
    while (grade <= to_pct) if direction > 0 else (grade >= to_pct):
        grades.append(round(grade, 2))
        overshoot = (
            grade + step_pct > to_pct if direction > 0 else grade - step_pct < to_pct
        )
        if overshoot:
            break
        grade += step_pct * direction
    if not grades or grades[-1] != to_pct:
        grades.append(to_pct)
    return grades


class TicketState(Enum):
    AWAITING_ACK = "awaiting_ack"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"
    WRITE_FAILED = "write_failed"


@dataclass
class CommandTicket:
    """One outstanding Control Point request."""

    opcode: int
    future: asyncio.Future[int]
    deadline_ms: float
    state: TicketState = TicketState.AWAITING_ACK
    timer: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self.state is TicketState.AWAITING_ACK

    def resolve(self, result: int) -> None:
        if not self.pending:
            return
        self._settle(TicketState.RESOLVED)
        if not self.future.done():
            self.future.set_result(result)

    def fail(self, state: TicketState, error: BaseException) -> None:
        if not self.pending:
            return
        self._settle(state)
        if not self.future.done():
            self.future.set_exception(error)

    def _settle(self, state: TicketState) -> None:
        self.state = state
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass(frozen=True)
class AckEvent:
    for_opcode: Optional[int]
    result: Optional[int]
    matched: bool


@dataclass(frozen=True)
class ConnectionEvent:
    connected: bool
    label: str


@dataclass
class DeviceSession:
    """One connected trainer. Lives from ``connect`` until disconnect or drop."""

    label: str
    characteristics: frozenset[str]
    subscriptions: list[str] = field(default_factory=list)
    connected: bool = True


class FTMSClient:
    """Async FTMS client for one trainer over a GATT transport.

    At most one Control Point command waits for its ack at any time; a newer
    command fails the older one with ``CommandSupersededError``.
    """

    def __init__(
        self,
        transport: GattTransport,
        *,
        clock: Clock | None = None,
        ack_timeout_ms: float = DEFAULT_ACK_TIMEOUT_MS,
    ) -> None:
        self._transport = transport
        self._clock = clock or AsyncioClock()
        self._ack_timeout_ms = ack_timeout_ms
        self._session: Optional[DeviceSession] = None
        self._ticket: Optional[CommandTicket] = None
        self.telemetry: EventStream[IndoorBikeData] = EventStream("telemetry")
        self.acks: EventStream[AckEvent] = EventStream("ack")
        self.logs: EventStream[str] = EventStream("log")
        self.connection: EventStream[ConnectionEvent] = EventStream("connection")

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._session.connected

    @property
    def session(self) -> Optional[DeviceSession]:
        return self._session

    @property
    def pending_ticket(self) -> Optional[CommandTicket]:
        if self._ticket is not None and self._ticket.pending:
            return self._ticket
        return None

    @property
    def ack_timeout_ms(self) -> float:
        return self._ack_timeout_ms

    async def connect(self, selector: Optional[str] = None) -> DeviceSession:
        """Open the transport, check the FTMS characteristics and subscribe."""
        if self.is_connected:
            raise RuntimeError("Already connected")

        self._log(logging.INFO, "Connecting to trainer...")
        label = await self._transport.connect(selector, self._handle_transport_disconnect)
        discovered = self._transport.services()
        ftms_chars = discovered.get(FTMS_SERVICE_UUID)
        if ftms_chars is None:
            missing = [FTMS_SERVICE_UUID]
        else:
            missing = [uuid for uuid in REQUIRED_FTMS_CHARACTERISTICS if uuid not in ftms_chars]
        if missing:
            await self._close_transport_quietly()
            raise DeviceConnectionError(
                f"{label}: missing required FTMS service/characteristics: {', '.join(missing)}"
            )

        vendor_chars = discovered.get(VENDOR_SERVICE_UUID, frozenset())
        session = DeviceSession(label=label, characteristics=ftms_chars | vendor_chars)
        self._session = session
        try:
            await self._subscribe_all(session)
        except Exception as exc:
            self._session = None
            session.connected = False
            await self._close_transport_quietly()
            raise DeviceConnectionError(f"{label}: unable to subscribe to FTMS") from exc

        self._log(logging.INFO, f"[BT] Connected & subscribed: {label}")
        self.connection.emit(ConnectionEvent(connected=True, label=label))
        return session

    async def disconnect(self) -> None:
        session = self._close_session("disconnected")
        if session is None:
            return
        try:
            for char_uuid in reversed(session.subscriptions):
                try:
                    await self._transport.stop_notify(char_uuid)
                except Exception as exc:  # pragma: no cover - BLE runtime variability
                    _LOGGER.debug("stop_notify %s failed: %s", char_uuid, exc)
            session.subscriptions.clear()
            await self._transport.disconnect()
        finally:
            self._log(logging.INFO, "[BT] Disconnected")
            self.connection.emit(ConnectionEvent(connected=False, label=session.label))

    async def read_features(self) -> bytes:
        self._require_session()
        raw = await self._transport.read(FITNESS_MACHINE_FEATURE_CHAR_UUID)
        self._log(logging.DEBUG, f"READ FTMS Feature: {_hex(raw)}")
        return raw

    async def set_target_power(self, watts: float) -> int:
        """Hold ``watts`` in ERG mode. Returns the ack result code."""
        if (
            isinstance(watts, bool)
            or not isinstance(watts, (int, float))
            or not math.isfinite(watts)
            or not 0 <= watts <= MAX_TARGET_POWER_WATTS
        ):
            raise ValidationError(f"ERG watts must be 0..{MAX_TARGET_POWER_WATTS}, got {watts!r}")
        command = SetTargetPower(watts=int(round(watts)))
        self._log(
            logging.DEBUG,
            f"WRITE FTMS TargetPower {command.watts}W (0x05): {_hex(command.encode())}",
        )
        return await self._send(command)

    async def set_simulation_parameters(
        self,
        grade_pct: float,
        crr: float = DEFAULT_CRR,
        cda: float = DEFAULT_CDA,
        wind_mps: float = 0.0,
    ) -> int:
        """Send SIM parameters; out-of-range values saturate instead of raising."""
        command = SetSimulationParameters.from_physical(
            grade_pct=grade_pct, crr=crr, cda=cda, wind_mps=wind_mps
        )
        self._log(
            logging.DEBUG,
            f"WRITE FTMS SIM wind={command.wind_mps:.2f}m/s grade={command.grade_pct:.2f}% "
            f"crr={command.crr:.4f} cw={command.cda:.2f}: {_hex(command.encode())}",
        )
        return await self._send(command)

    async def ramp_simulation(
        self,
        from_pct: float,
        to_pct: float,
        step_pct: float = 1.0,
        dwell_ms: float = 5000.0,
        crr: float = DEFAULT_CRR,
        cda: float = DEFAULT_CDA,
        wind_mps: float = 0.0,
    ) -> list[float]:
        """Walk the SIM grade towards ``to_pct``, dwelling at each step."""
        grades = ramp_grades(from_pct, to_pct, step_pct)
        self._log(
            logging.INFO,
            f"=== RAMP {from_pct}% -> {to_pct}% by {step_pct}% every {dwell_ms / 1000:.1f}s ===",
        )
        for grade in grades:
            self._log(logging.DEBUG, f"--- RAMP step -> {grade:.2f}% ---")
            await self.set_simulation_parameters(grade, crr=crr, cda=cda, wind_mps=wind_mps)
            await self._clock.sleep(dwell_ms)
        self._log(logging.INFO, "RAMP complete.")
        return grades

    async def _request_control(self) -> int:
        command = RequestControl()
        self._log(logging.DEBUG, f"WRITE FTMS RequestControl (0x00): {_hex(command.encode())}")
        return await self._exchange(command)

    async def _send(self, command: ControlPointCommand) -> int:
        self._require_session()
        # Many trainers want us to own control before any other operation.
        if command.opcode != OP_REQUEST_CONTROL:
            try:
                await self._request_control()
            except CommandCancelledError:
                raise
            except FTMSError as exc:
                # A newer caller superseding our RequestControl lands here too; we still
                # send our command, which then supersedes that caller in turn.
                self._log(logging.WARNING, f"WARN: RequestControl failed: {exc}")
        return await self._exchange(command)

    async def _exchange(self, command: ControlPointCommand) -> int:
        self._require_session()
        previous = self._ticket
        if previous is not None and previous.pending:
            previous.fail(
                TicketState.SUPERSEDED,
                CommandSupersededError(previous.opcode, command.opcode),
            )

        ticket = CommandTicket(
            opcode=command.opcode,
            future=asyncio.get_running_loop().create_future(),
            deadline_ms=self._clock.now_ms() + self._ack_timeout_ms,
        )
        ticket.timer = self._clock.call_later(
            self._ack_timeout_ms, lambda: self._expire(ticket)
        )
        self._ticket = ticket

        payload = command.encode()
        try:
            await self._transport.write(
                FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID, payload, response=True
            )
        except Exception as exc:
            self._log(
                logging.WARNING,
                f"write with response failed ({exc}), trying write without response",
            )
            try:
                await self._transport.write(
                    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID, payload, response=False
                )
            except Exception as fallback_exc:
                error = TransportWriteError(command.opcode)
                error.__cause__ = fallback_exc
                ticket.fail(TicketState.WRITE_FAILED, error)

        try:
            return await ticket.future
        except asyncio.CancelledError:
            ticket.fail(
                TicketState.CANCELLED,
                CommandCancelledError(command.opcode, "caller cancelled"),
            )
            raise
        finally:
            if self._ticket is ticket:
                self._ticket = None

    def _expire(self, ticket: CommandTicket) -> None:
        if not ticket.pending:
            return
        self._log(
            logging.WARNING,
            f"ACK timeout for opcode 0x{ticket.opcode:02X} after {self._ack_timeout_ms:.0f} ms",
        )
        ticket.fail(
            TicketState.TIMED_OUT,
            CommandTimeoutError(ticket.opcode, self._ack_timeout_ms),
        )

    def _require_session(self) -> DeviceSession:
        if self._session is None or not self._session.connected:
            raise RuntimeError("Not connected")
        return self._session

    async def _subscribe_all(self, session: DeviceSession) -> None:
        await self._transport.start_notify(
            INDOOR_BIKE_DATA_CHAR_UUID, self._handle_indoor_bike_data_notification
        )
        session.subscriptions.append(INDOOR_BIKE_DATA_CHAR_UUID)
        self._log(logging.DEBUG, "Subscribed: FTMS Indoor Bike Data (notify).")

        await self._transport.start_notify(
            FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID, self._handle_control_point_indication
        )
        session.subscriptions.append(FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID)
        self._log(logging.DEBUG, "Subscribed: FTMS Control Point (indicate).")

        optional = (
            (FITNESS_MACHINE_STATUS_CHAR_UUID, "FTMS Machine Status"),
            (TRAINING_STATUS_CHAR_UUID, "FTMS Training Status"),
            (VENDOR_OBSERVED_CHARACTERISTICS[0], "Vendor Riding Data"),
            (VENDOR_OBSERVED_CHARACTERISTICS[1], "Vendor SyncTX"),
        )
        for char_uuid, name in optional:
            if char_uuid not in session.characteristics:
                continue
            try:
                await self._transport.start_notify(char_uuid, self._observer(name))
            except Exception as exc:  # pragma: no cover - optional BLE characteristic
                self._log(logging.DEBUG, f"{name} unavailable: {exc}")
                continue
            session.subscriptions.append(char_uuid)
            self._log(logging.DEBUG, f"Subscribed: {name}.")

    def _observer(self, name: str):
        def _on_notify(payload: bytes) -> None:
            self._log(logging.DEBUG, f"NOTIFY {name}: {_hex(payload)}")

        return _on_notify

    def _handle_indoor_bike_data_notification(self, payload: bytes) -> None:
        try:
            metrics = parse_indoor_bike_data(payload)
        except ValueError as exc:
            self._log(logging.WARNING, f"Dropping Indoor Bike Data {_hex(payload)}: {exc}")
            return
        self._log(
            logging.DEBUG,
            f"NOTIFY FTMS IBD: flags=0x{metrics.flags:04X} raw={_hex(payload)} "
            f"speed={metrics.instantaneous_speed_kmh} "
            f"cadence={metrics.instantaneous_cadence} "
            f"power={metrics.instantaneous_power}",
        )
        self.telemetry.emit(metrics)

    def _handle_control_point_indication(self, payload: bytes) -> None:
        response = ControlPointResponse.decode(payload)
        if response is None:
            self._log(logging.DEBUG, f"IND from FTMS CP: {_hex(payload)} (not a response)")
            self.acks.emit(
                AckEvent(
                    for_opcode=payload[1] if len(payload) > 1 else None,
                    result=payload[2] if len(payload) > 2 else None,
                    matched=False,
                )
            )
            return

        ticket = self._ticket
        matched = (
            ticket is not None
            and ticket.pending
            and ticket.opcode == response.request_opcode
        )
        self._log(
            logging.DEBUG,
            f"IND from FTMS CP: {_hex(payload)}  (ACK for 0x{response.request_opcode:02X}, "
            f"result=0x{response.result:02X})",
        )
        if matched:
            assert ticket is not None
            if response.succeeded:
                ticket.resolve(response.result)
            else:
                ticket.fail(
                    TicketState.REJECTED,
                    DeviceRejectedError(response.request_opcode, response.result),
                )
        self.acks.emit(
            AckEvent(
                for_opcode=response.request_opcode,
                result=response.result,
                matched=matched,
            )
        )

    def _handle_transport_disconnect(self) -> None:
        session = self._close_session("transport dropped")
        if session is None:
            return
        self._log(logging.WARNING, "[BT] Disconnected by transport")
        self.connection.emit(ConnectionEvent(connected=False, label=session.label))

    def _close_session(self, reason: str) -> Optional[DeviceSession]:
        session = self._session
        if session is None:
            return None
        self._session = None
        session.connected = False
        ticket = self._ticket
        if ticket is not None and ticket.pending:
            ticket.fail(TicketState.CANCELLED, CommandCancelledError(ticket.opcode, reason))
        return session

    async def _close_transport_quietly(self) -> None:
        try:
            await self._transport.disconnect()
        except Exception as exc:  # pragma: no cover - BLE runtime variability
            _LOGGER.debug("transport disconnect after failed connect: %s", exc)

    def _log(self, level: int, message: str) -> None:
        _LOGGER.log(level, message)
        self.logs.emit(message)
