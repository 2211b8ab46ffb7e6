"""Errors raised by the FTMS link."""

from __future__ import annotations

from hybrid.ble.constants import describe_result_code


class FTMSError(Exception):
    """Base class for FTMS link failures."""


class DeviceConnectionError(FTMSError, ConnectionError):
    """Raised when the trainer lacks a required FTMS service or characteristic."""


class CommandTimeoutError(FTMSError, TimeoutError):
    def __init__(self, opcode: int, timeout_ms: float) -> None:
        super().__init__(
            f"No Control Point ack for opcode 0x{opcode:02X} within {timeout_ms:.0f} ms"
        )
        self.opcode = opcode
        self.timeout_ms = timeout_ms


class CommandSupersededError(FTMSError):
    def __init__(self, opcode: int, by_opcode: int) -> None:
        super().__init__(
            f"Command 0x{opcode:02X} replaced by newer command 0x{by_opcode:02X}"
        )
        self.opcode = opcode
        self.by_opcode = by_opcode


class CommandCancelledError(FTMSError):
    def __init__(self, opcode: int, reason: str = "disconnected") -> None:
        super().__init__(f"Command 0x{opcode:02X} cancelled ({reason})")
        self.opcode = opcode
        self.reason = reason


class DeviceRejectedError(FTMSError):
    def __init__(self, opcode: int, result: int) -> None:
        super().__init__(
            f"Trainer rejected opcode 0x{opcode:02X}: "
            f"result 0x{result:02X} ({describe_result_code(result)})"
        )
        self.opcode = opcode
        self.result = result


class TransportWriteError(FTMSError):
    def __init__(self, opcode: int) -> None:
        super().__init__(
            f"Unable to write opcode 0x{opcode:02X} to the FTMS Control Point"
        )
        self.opcode = opcode


class ValidationError(ValueError):
    """Raised synchronously for out-of-range command inputs; nothing is sent."""
