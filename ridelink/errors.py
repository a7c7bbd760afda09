"""Error taxonomy for ridelink."""
from __future__ import annotations

import asyncio
from typing import Sequence, TYPE_CHECKING

from bleak.exc import BleakError

if TYPE_CHECKING:  # pragma: no cover - typing helper only
    from ridelink.negotiator import AuthStrategyResult


class RidelinkError(Exception):
    """Base error for ridelink."""

    reason: str = "Error"
    terminal: bool = True


class PermissionDenied(RidelinkError):
    """Raised when the platform refuses Bluetooth permissions."""

    reason = "PermissionDenied"


class RadioUnavailable(RidelinkError):
    """Raised when the adapter cannot enter scanning state."""

    reason = "RadioUnavailable"


class LinkEstablishFailed(RidelinkError):
    """Raised when the physical connection cannot be made."""

    reason = "LinkEstablishFailed"


class DiscoveryFailed(RidelinkError):
    """Raised when service/characteristic enumeration fails."""

    reason = "DiscoveryFailed"


class AuthenticationExhausted(RidelinkError):
    """Raised when no negotiation strategy produced a live data stream."""

    reason = "AuthenticationExhausted"

    def __init__(self, message: str, attempts: Sequence["AuthStrategyResult"] = ()) -> None:
        super().__init__(message)
        self.attempts = tuple(attempts)


class MalformedFrame(RidelinkError, ValueError):
    """Raised when a telemetry frame cannot be decoded."""

    reason = "MalformedFrame"
    terminal = False


class WriteFailed(RidelinkError):
    """Raised when a characteristic write is rejected."""

    reason = "WriteFailed"
    terminal = False


class BondingFailed(RidelinkError):
    """Raised when the platform bonding request fails."""

    reason = "BondingFailed"
    terminal = False


class SessionStateError(RuntimeError):
    """Raised on an illegal session state transition."""


# Failures bleak surfaces from connect, discovery, write, notify and pair calls.
BLE_ERRORS = (BleakError, OSError, asyncio.TimeoutError)


__all__ = [
    "BLE_ERRORS",
    "RidelinkError",
    "PermissionDenied",
    "RadioUnavailable",
    "LinkEstablishFailed",
    "DiscoveryFailed",
    "AuthenticationExhausted",
    "MalformedFrame",
    "WriteFailed",
    "BondingFailed",
    "SessionStateError",
]
