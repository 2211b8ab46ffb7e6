from __future__ import annotations

import math

import pytest

from hybrid.ble.commands import (
    ControlPointResponse,
    RequestControl,
    SetSimulationParameters,
    SetTargetPower,
    decode_command,
)
from hybrid.ble.errors import ValidationError


def test_request_control_is_opcode_only() -> None:
    assert RequestControl().encode() == b"\x00"
    assert decode_command(b"\x00") == RequestControl()


def test_set_target_power_encoding() -> None:
    payload = SetTargetPower(watts=250).encode()

    assert payload == bytes([0x05, 0xFA, 0x00])
    assert decode_command(payload) == SetTargetPower(watts=250)


def test_set_target_power_range() -> None:
    assert SetTargetPower(watts=0).encode() == b"\x05\x00\x00"
    assert SetTargetPower(watts=2000).encode() == b"\x05\xd0\x07"
    with pytest.raises(ValidationError):
        SetTargetPower(watts=2001)
    with pytest.raises(ValidationError):
        SetTargetPower(watts=-1)


def test_simulation_field_order_and_units() -> None:
    command = SetSimulationParameters.from_physical(
        grade_pct=5.0, crr=0.004, cda=0.51, wind_mps=-1.5
    )

    # wind s16, grade s16, crr u8, cda u8
    assert command.encode() == bytes([0x11, 0x6A, 0xFF, 0xF4, 0x01, 0x28, 0x33])


def test_grade_quantization_round_trip() -> None:
    command = SetSimulationParameters.from_physical(
        grade_pct=12.3456, crr=0.003, cda=0.45, wind_mps=0.0
    )
    decoded = decode_command(command.encode())

    assert isinstance(decoded, SetSimulationParameters)
    assert decoded.grade_raw == 1235
    assert abs(decoded.grade_pct - 12.35) <= 0.01


def test_simulation_values_saturate_instead_of_raising() -> None:
    command = SetSimulationParameters.from_physical(
        grade_pct=400.0, crr=0.5, cda=-2.0, wind_mps=-1000.0
    )

    assert command.grade_raw == 32767
    assert command.crr_raw == 255
    assert command.cda_raw == 0
    assert command.wind_raw == -32768


def test_simulation_non_finite_values_saturate() -> None:
    command = SetSimulationParameters.from_physical(
        grade_pct=math.inf, crr=math.nan, cda=0.45, wind_mps=-math.inf
    )

    assert command.grade_raw == 32767
    assert command.crr_raw == 0
    assert command.wind_raw == -32768


def test_decode_command_rejects_unknown_or_short_payloads() -> None:
    with pytest.raises(ValueError):
        decode_command(b"")
    with pytest.raises(ValueError):
        decode_command(b"\x05\x10")
    with pytest.raises(ValueError):
        decode_command(b"\x11\x00\x00")
    with pytest.raises(ValueError):
        decode_command(b"\x07")


def test_control_point_response_decode() -> None:
    ok = ControlPointResponse.decode(b"\x80\x05\x01")
    assert ok == ControlPointResponse(request_opcode=0x05, result=0x01)
    assert ok is not None and ok.succeeded

    rejected = ControlPointResponse.decode(b"\x80\x11\x03")
    assert rejected is not None and not rejected.succeeded

    assert ControlPointResponse.decode(b"\x80\x05") is None
    assert ControlPointResponse.decode(b"\x05\x05\x01") is None
    assert ControlPointResponse(0x00, 0x01).encode() == b"\x80\x00\x01"
