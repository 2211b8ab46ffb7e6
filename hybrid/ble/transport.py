"""GATT transports for the FTMS link: bleak for real trainers, plus a simulated trainer."""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import logging
import math
import random
import struct
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

from hybrid.ble.commands import (
    ControlPointCommand,
    ControlPointResponse,
    RequestControl,
    SetSimulationParameters,
    SetTargetPower,
    decode_command,
)
from hybrid.ble.constants import (
    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
    FITNESS_MACHINE_FEATURE_CHAR_UUID,
    FITNESS_MACHINE_STATUS_CHAR_UUID,
    FLAG_INSTANTANEOUS_CADENCE_PRESENT,
    FLAG_INSTANTANEOUS_POWER_PRESENT,
    FTMS_SERVICE_UUID,
    INDOOR_BIKE_DATA_CHAR_UUID,
    RESULT_SUCCESS,
    TRAINING_STATUS_CHAR_UUID,
)
from hybrid.ble.errors import DeviceConnectionError
from hybrid.core.clock import AsyncioClock, Clock

_LOGGER = logging.getLogger(__name__)

_bleak: Any
try:
    _bleak = importlib.import_module("bleak")
except ImportError:  # pragma: no cover - runtime dependency guard
    _bleak = None


NotifyCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]


class GattTransport(Protocol):
    """What the FTMS link needs from a BLE stack."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(
        self, selector: Optional[str], on_disconnect: DisconnectCallback
    ) -> str: ...

    async def disconnect(self) -> None: ...

    def services(self) -> Mapping[str, frozenset[str]]: ...

    async def start_notify(self, char_uuid: str, callback: NotifyCallback) -> None: ...

    async def stop_notify(self, char_uuid: str) -> None: ...

    async def read(self, char_uuid: str) -> bytes: ...

    async def write(self, char_uuid: str, data: bytes, *, response: bool) -> None: ...


_BLE_COMPANY_IDS: dict[int, str] = {
    0x0087: "Garmin",
    0x00D2: "Wahoo Fitness",
    0x011F: "Tacx",
    0x04D8: "Elite",
}

_BRAND_HINTS: tuple[tuple[str, str], ...] = (
    ("kickr", "Wahoo Fitness"),
    ("wahoo", "Wahoo Fitness"),
    ("direto", "Elite"),
    ("suito", "Elite"),
    ("elite", "Elite"),
    ("tacx", "Tacx"),
    ("neo", "Tacx"),
    ("saris", "Saris"),
    ("zwift", "Zwift"),
)


def _resolve_manufacturer(
    name: str, manufacturer_data: Any | None
) -> str | None:
    if isinstance(manufacturer_data, dict) and manufacturer_data:
        for key in sorted(manufacturer_data.keys()):
            if isinstance(key, int):
                return _BLE_COMPANY_IDS.get(key, f"MFG 0x{key:04X}")
    lowered = name.lower()
    for hint, brand in _BRAND_HINTS:
        if hint in lowered:
            return brand
    return None


@dataclass(frozen=True)
class ScannedDevice:
    name: str
    address: str
    rssi: int
    has_ftms: bool
    manufacturer: str | None = None


def _ensure_bleak_available() -> None:
    if _bleak is None:
        raise RuntimeError(
            "bleak is not installed. Run: pip install bleak"
        )


class BleakTransport:
    """GATT transport over bleak."""

    def __init__(self, ble_pair: bool = True, timeout: float = 25.0) -> None:
        self._client: Optional[Any] = None
        self._ble_pair = ble_pair
        self._timeout = timeout
        self._scan_cache: dict[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected)

    async def scan(self, timeout: float = 5.0) -> list[ScannedDevice]:
        _ensure_bleak_available()
        discovered = await _bleak.BleakScanner.discover(
            timeout=timeout, return_adv=True
        )
        devices: list[ScannedDevice] = []
        self._scan_cache = {}

        for _, (device, adv_data) in discovered.items():
            uuids = {u.lower() for u in (adv_data.service_uuids or [])}
            self._scan_cache[device.address.lower()] = device
            devices.append(
                ScannedDevice(
                    name=device.name or "Unknown",
                    address=device.address,
                    rssi=adv_data.rssi,
                    has_ftms=FTMS_SERVICE_UUID in uuids,
                    manufacturer=_resolve_manufacturer(
                        device.name or "",
                        getattr(adv_data, "manufacturer_data", None),
                    ),
                )
            )

        devices.sort(key=lambda d: d.rssi, reverse=True)
        return devices

    async def connect(
        self, selector: Optional[str], on_disconnect: DisconnectCallback
    ) -> str:
        """Connect to a BLE address/name, or the first device advertising FTMS."""
        _ensure_bleak_available()

        device = await self._resolve_device(selector)
        # Some trainers are powered on but not advertising continuously.
        if device is None and selector and selector != "auto":
            device = selector
        if device is None:
            raise DeviceConnectionError("No FTMS device found")

        def _on_disconnect(_client: Any) -> None:
            on_disconnect()

        client = self._build_bleak_client(device, _on_disconnect, pair=self._ble_pair)
        try:
            await client.connect(timeout=self._timeout)
        except Exception:
            # Some backends refuse pairing from the API; retry without it.
            if not self._ble_pair:
                raise
            with contextlib.suppress(Exception):
                await client.disconnect()
            client = self._build_bleak_client(device, _on_disconnect, pair=False)
            await client.connect(timeout=self._timeout)
        self._client = client

        if isinstance(device, str):
            return f"Unknown ({device})"
        return f"{device.name or 'Unknown'} ({device.address})"

    def _build_bleak_client(
        self, device: Any, on_disconnect: Callable[[Any], None], *, pair: bool
    ) -> Any:
        if pair:
            try:
                return _bleak.BleakClient(
                    device, disconnected_callback=on_disconnect, pair=True
                )
            except TypeError:
                _LOGGER.debug("pair=True unsupported by current backend, using plain connect")
        return _bleak.BleakClient(device, disconnected_callback=on_disconnect)

    async def disconnect(self) -> None:
        if self._client:
            client, self._client = self._client, None
            await client.disconnect()

    def services(self) -> Mapping[str, frozenset[str]]:
        client = self._require_client()
        return {
            service.uuid.lower(): frozenset(
                char.uuid.lower() for char in service.characteristics
            )
            for service in client.services
        }

    async def start_notify(self, char_uuid: str, callback: NotifyCallback) -> None:
        def _handler(_sender: object, data: bytearray) -> None:
            callback(bytes(data))

        await self._require_client().start_notify(char_uuid, _handler)

    async def stop_notify(self, char_uuid: str) -> None:
        await self._require_client().stop_notify(char_uuid)

    async def read(self, char_uuid: str) -> bytes:
        return bytes(await self._require_client().read_gatt_char(char_uuid))

    async def write(self, char_uuid: str, data: bytes, *, response: bool) -> None:
        await self._require_client().write_gatt_char(char_uuid, data, response=response)

    def _require_client(self) -> Any:
        if not self._client:
            raise RuntimeError("Not connected")
        return self._client

    async def _resolve_device(self, selector: Optional[str]) -> Optional[Any]:
        if selector and selector != "auto":
            cached = self._scan_cache.get(selector.lower())
            if cached is not None:
                return cached
            return await _bleak.BleakScanner.find_device_by_filter(
                lambda d, _: (d.address.lower() == selector.lower())
                or ((d.name or "").lower() == selector.lower()),
                timeout=self._timeout,
            )

        discovered = await _bleak.BleakScanner.discover(
            timeout=self._timeout, return_adv=True
        )
        for _, (device, adv_data) in discovered.items():
            uuids = {u.lower() for u in (adv_data.service_uuids or [])}
            if FTMS_SERVICE_UUID in uuids:
                return device
        return None


def encode_indoor_bike_data(speed_kmh: float, cadence_rpm: float, power_watts: int) -> bytes:
    """Build an Indoor Bike Data frame carrying speed, cadence and power."""
    flags = FLAG_INSTANTANEOUS_CADENCE_PRESENT | FLAG_INSTANTANEOUS_POWER_PRESENT
    return struct.pack(
        "<HHHh",
        flags,
        max(0, min(0xFFFF, int(round(speed_kmh * 100)))),
        max(0, min(0xFFFF, int(round(cadence_rpm * 2)))),
        max(-32768, min(32767, int(power_watts))),
    )


SIM_DEVICE_LABEL = "Hybrid Sim HT (SIM:HT:00:00:00:01)"


class SimulatedTrainerTransport:
    """In-process FTMS trainer: acks every command and streams Indoor Bike Data."""

    def __init__(
        self,
        clock: Clock | None = None,
        *,
        seed: int = 20260225,
        interval_ms: float = 1000.0,
    ) -> None:
        self._clock = clock or AsyncioClock()
        self._interval_ms = interval_ms
        self._connected = False
        self._on_disconnect: Optional[DisconnectCallback] = None
        self._notify: dict[str, NotifyCallback] = {}
        self._stream_task: Optional[asyncio.Task[None]] = None
        self._rng = random.Random(seed)
        self._tick = 0
        self._mode = "erg"
        self._target_watts = 120.0
        self._grade_pct = 0.0
        self._power = 100.0
        self._cadence = 85.0
        self._speed = 28.0
        self.commands: list[ControlPointCommand] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(
        self, selector: Optional[str], on_disconnect: DisconnectCallback
    ) -> str:
        self._connected = True
        self._on_disconnect = on_disconnect
        return SIM_DEVICE_LABEL

    async def disconnect(self) -> None:
        self._connected = False
        self._notify.clear()
        await self._stop_stream()

    def drop(self) -> None:
        """Simulate the trainer going away without a local disconnect call."""
        self._connected = False
        self._notify.clear()
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None
        if self._on_disconnect is not None:
            self._on_disconnect()

    def services(self) -> Mapping[str, frozenset[str]]:
        return {
            FTMS_SERVICE_UUID: frozenset(
                {
                    FITNESS_MACHINE_FEATURE_CHAR_UUID,
                    INDOOR_BIKE_DATA_CHAR_UUID,
                    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
                    FITNESS_MACHINE_STATUS_CHAR_UUID,
                    TRAINING_STATUS_CHAR_UUID,
                }
            )
        }

    async def start_notify(self, char_uuid: str, callback: NotifyCallback) -> None:
        self._require_connected()
        self._notify[char_uuid] = callback
        if char_uuid == INDOOR_BIKE_DATA_CHAR_UUID and (
            self._stream_task is None or self._stream_task.done()
        ):
            self._stream_task = asyncio.create_task(self._stream_loop())

    async def stop_notify(self, char_uuid: str) -> None:
        self._notify.pop(char_uuid, None)
        if char_uuid == INDOOR_BIKE_DATA_CHAR_UUID:
            await self._stop_stream()

    async def read(self, char_uuid: str) -> bytes:
        self._require_connected()
        if char_uuid == FITNESS_MACHINE_FEATURE_CHAR_UUID:
            # cadence + power measurement; power target + indoor bike simulation
            return struct.pack("<II", 0x00004002, 0x00002008)
        raise ValueError(f"Characteristic {char_uuid} is not readable")

    async def write(self, char_uuid: str, data: bytes, *, response: bool) -> None:
        self._require_connected()
        if char_uuid != FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID:
            raise ValueError(f"Characteristic {char_uuid} is not writable")
        command = decode_command(data)
        self.commands.append(command)
        self._apply(command)
        indicate = self._notify.get(FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID)
        if indicate is not None:
            ack = ControlPointResponse(command.opcode, RESULT_SUCCESS).encode()
            asyncio.get_running_loop().call_soon(indicate, ack)

    def _apply(self, command: ControlPointCommand) -> None:
        if isinstance(command, SetTargetPower):
            self._mode = "erg"
            self._target_watts = float(command.watts)
            _LOGGER.debug("[SIM-HT] ERG target %sW", command.watts)
        elif isinstance(command, SetSimulationParameters):
            self._mode = "sim"
            self._grade_pct = command.grade_pct
            _LOGGER.debug("[SIM-HT] SIM grade %.2f%%", command.grade_pct)
        elif isinstance(command, RequestControl):
            _LOGGER.debug("[SIM-HT] control granted")

    def _require_connected(self) -> None:
        if not self._connected:
            raise RuntimeError("Not connected")

    async def _stop_stream(self) -> None:
        if self._stream_task is not None:
            self._stream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stream_task
            self._stream_task = None

    def _next_sample(self) -> tuple[float, float, int]:
        self._tick += 1
        if self._mode == "sim":
            target = 180.0 + (max(-10.0, min(15.0, self._grade_pct)) * 18.0)
        else:
            target = self._target_watts
        periodic = 8.0 * math.sin(self._tick / 5.0)
        noise = self._rng.uniform(-5.0, 5.0)
        dynamic_target = max(0.0, min(1200.0, target + periodic + noise))
        self._power += max(-30.0, min(30.0, (dynamic_target - self._power) * 0.30))

        cadence_target = 70.0 + (self._power / 8.8) + self._rng.uniform(-6.0, 6.0)
        self._cadence += max(-5.5, min(5.5, (cadence_target - self._cadence) * 0.55))
        self._cadence = max(45.0, min(128.0, self._cadence))

        speed_target = 14.0 + (self._power / 11.0) - (self._grade_pct * 1.5 if self._mode == "sim" else 0.0)
        self._speed += max(-2.8, min(2.8, (speed_target - self._speed) * 0.40))
        self._speed = max(5.0, min(78.0, self._speed))
        return round(self._speed, 2), round(self._cadence * 2) / 2, int(round(self._power))

    async def _stream_loop(self) -> None:
        while self._connected:
            callback = self._notify.get(INDOOR_BIKE_DATA_CHAR_UUID)
            if callback is not None:
                speed, cadence, power = self._next_sample()
                callback(encode_indoor_bike_data(speed, cadence, power))
            await self._clock.sleep(self._interval_ms)
