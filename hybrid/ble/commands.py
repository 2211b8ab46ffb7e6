"""Typed FTMS Control Point commands and their wire encoding."""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from hybrid.ble.constants import (
    MAX_TARGET_POWER_WATTS,
    OP_REQUEST_CONTROL,
    OP_RESPONSE_CODE,
    OP_SET_INDOOR_BIKE_SIMULATION,
    OP_SET_TARGET_POWER,
    RESULT_SUCCESS,
)
from hybrid.ble.errors import ValidationError

INT16_MIN, INT16_MAX = -32768, 32767
UINT8_MAX = 255

# Resolution of the Set Indoor Bike Simulation Parameters fields.
WIND_RESOLUTION_MPS = 0.01
GRADE_RESOLUTION_PCT = 0.01
CRR_RESOLUTION = 0.0001
CDA_RESOLUTION = 0.01


def _quantize(value: float, resolution: float, low: int, high: int) -> int:
    scaled = value / resolution
    if math.isnan(scaled):
        return _saturate(0, low, high)
    if math.isinf(scaled):
        return high if scaled > 0 else low
    return _saturate(round(scaled), low, high)


def _saturate(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def quantize_signed16(value: float, resolution: float) -> int:
    return _quantize(value, resolution, INT16_MIN, INT16_MAX)


def quantize_unsigned8(value: float, resolution: float) -> int:
    return _quantize(value, resolution, 0, UINT8_MAX)


@dataclass(frozen=True)
class RequestControl:
    opcode: ClassVar[int] = OP_REQUEST_CONTROL

    def encode(self) -> bytes:
        return bytes([self.opcode])


@dataclass(frozen=True)
class SetTargetPower:
    watts: int
    opcode: ClassVar[int] = OP_SET_TARGET_POWER

    def __post_init__(self) -> None:
        if not 0 <= self.watts <= MAX_TARGET_POWER_WATTS:
            raise ValidationError(
                f"Target power must be 0..{MAX_TARGET_POWER_WATTS} W, got {self.watts}"
            )

    def encode(self) -> bytes:
        return bytes([self.opcode]) + struct.pack("<H", self.watts)


@dataclass(frozen=True)
class SetSimulationParameters:
    """Indoor bike simulation parameters, held in wire units.

    Use ``from_physical`` to build one from percent / metres-per-second values;
    it saturates each field instead of raising.
    """

    wind_raw: int
    grade_raw: int
    crr_raw: int
    cda_raw: int
    opcode: ClassVar[int] = OP_SET_INDOOR_BIKE_SIMULATION

    @classmethod
    def from_physical(
        cls, grade_pct: float, crr: float, cda: float, wind_mps: float
    ) -> "SetSimulationParameters":
        return cls(
            wind_raw=quantize_signed16(wind_mps, WIND_RESOLUTION_MPS),
            grade_raw=quantize_signed16(grade_pct, GRADE_RESOLUTION_PCT),
            crr_raw=quantize_unsigned8(crr, CRR_RESOLUTION),
            cda_raw=quantize_unsigned8(cda, CDA_RESOLUTION),
        )

    @property
    def grade_pct(self) -> float:
        return round(self.grade_raw * GRADE_RESOLUTION_PCT, 2)

    @property
    def wind_mps(self) -> float:
        return round(self.wind_raw * WIND_RESOLUTION_MPS, 2)

    @property
    def crr(self) -> float:
        return round(self.crr_raw * CRR_RESOLUTION, 4)

    @property
    def cda(self) -> float:
        return round(self.cda_raw * CDA_RESOLUTION, 2)

    def encode(self) -> bytes:
        return bytes([self.opcode]) + struct.pack(
            "<hhBB", self.wind_raw, self.grade_raw, self.crr_raw, self.cda_raw
        )


ControlPointCommand = Union[RequestControl, SetTargetPower, SetSimulationParameters]


def decode_command(payload: bytes) -> ControlPointCommand:
    """Parse a Control Point write back into its typed command."""
    if not payload:
        raise ValueError("Empty Control Point payload")
    opcode = payload[0]
    if opcode == OP_REQUEST_CONTROL:
        return RequestControl()
    if opcode == OP_SET_TARGET_POWER:
        if len(payload) < 3:
            raise ValueError("Set Target Power payload too short")
        return SetTargetPower(watts=struct.unpack_from("<H", payload, 1)[0])
    if opcode == OP_SET_INDOOR_BIKE_SIMULATION:
        if len(payload) < 7:
            raise ValueError("Set Simulation Parameters payload too short")
        wind_raw, grade_raw, crr_raw, cda_raw = struct.unpack_from("<hhBB", payload, 1)
        return SetSimulationParameters(
            wind_raw=wind_raw, grade_raw=grade_raw, crr_raw=crr_raw, cda_raw=cda_raw
        )
    raise ValueError(f"Unsupported Control Point opcode 0x{opcode:02X}")


@dataclass(frozen=True)
class ControlPointResponse:
    request_opcode: int
    result: int

    @property
    def succeeded(self) -> bool:
        return self.result == RESULT_SUCCESS

    def encode(self) -> bytes:
        return bytes([OP_RESPONSE_CODE, self.request_opcode, self.result])

    @classmethod
    def decode(cls, payload: bytes) -> Optional["ControlPointResponse"]:
        if len(payload) < 3 or payload[0] != OP_RESPONSE_CODE:
            return None
        return cls(request_opcode=payload[1], result=payload[2])
