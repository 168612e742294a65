"""Command-level errors reported back to the originating connection."""
from __future__ import annotations
from typing import Any, Dict, Optional


class CommandError(Exception):
    """Base error for a rejected command. ``code`` goes on the wire."""

    code = "command_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_data(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidCommand(CommandError):
    """Raised when the ``command`` field names no known command."""

    code = "invalid_command"


class MalformedMessage(CommandError):
    """Raised when a message cannot be parsed or has the wrong shape."""

    code = "malformed_message"


class InvalidSignal(CommandError):
    code = "invalid_signal"


class InvalidFeature(CommandError):
    code = "invalid_feature"


class InvalidGestureType(CommandError):
    code = "invalid_gesture_type"


class ConnectionNotOpen(CommandError):
    """Raised for commands arriving on a connection that is not open."""

    code = "connection_not_open"


class Conflict(CommandError):
    """Raised when enabling a signal would break the compatibility rules."""

    code = "conflict"

    def __init__(self, message: str, conflict_with: Optional[str] = None) -> None:
        super().__init__(message)
        self.conflict_with = conflict_with

    def to_data(self) -> Dict[str, Any]:
        data = super().to_data()
        data["conflict_with"] = self.conflict_with
        return data


class DeviceError(Exception):
    """Base error for the device transport. Never surfaced to clients."""


class DeviceConnectError(DeviceError):
    """Raised when the serial bridge cannot be opened."""
