"""Telemetry frame codec.

Frame layout (six bytes minimum, anything past the sixth byte is ignored)::

    0  speed        km/h, 0-255
    1  rpm high     big-endian with byte 2
    2  rpm low
    3  flags        bit 0 high beam, bit 1 hazards, bit 2 engine check, bit 3 battery
    4  fuel         percent, clamped to 100
    5  gear         0 is neutral
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

from ridelink.errors import MalformedFrame

FRAME_SIZE = 6
NEUTRAL_GEAR = "N"
DEFAULT_MODE = "Road"

HIGH_BEAM_BIT = 0x01
HAZARDS_BIT = 0x02
ENGINE_CHECK_BIT = 0x04
BATTERY_BIT = 0x08


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Decoded state of the cluster at one instant."""

    speed: int = 0
    rpm: int = 0
    gear: str = NEUTRAL_GEAR
    fuel: int = 0
    mode: str = DEFAULT_MODE
    high_beam: bool = False
    hazards: bool = False
    engine_check: bool = False
    battery: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DISCONNECTED_SNAPSHOT = TelemetrySnapshot()


def _gear_label(raw: int) -> str:
    return NEUTRAL_GEAR if raw == 0 else str(raw)


def decode(data: bytes | bytearray | memoryview) -> TelemetrySnapshot:
    """Decode one notification payload into a :class:`TelemetrySnapshot`.

    Raises :class:`MalformedFrame` for anything that is not a byte buffer of at
    least :data:`FRAME_SIZE` bytes. Callers keep their previous snapshot when
    that happens.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise MalformedFrame(f"expected a byte buffer, got {type(data).__name__}")
    frame = bytes(data)
    if len(frame) < FRAME_SIZE:
        raise MalformedFrame(f"frame too short: {len(frame)} < {FRAME_SIZE} bytes")

    speed, rpm_hi, rpm_lo, flags, fuel, gear = frame[:FRAME_SIZE]
    return TelemetrySnapshot(
        speed=speed,
        rpm=(rpm_hi << 8) | rpm_lo,
        gear=_gear_label(gear),
        fuel=min(fuel, 100),
        mode=DEFAULT_MODE,
        high_beam=bool(flags & HIGH_BEAM_BIT),
        hazards=bool(flags & HAZARDS_BIT),
        engine_check=bool(flags & ENGINE_CHECK_BIT),
        battery=bool(flags & BATTERY_BIT),
    )


def encode(snapshot: TelemetrySnapshot) -> bytes:
    """Inverse of :func:`decode` for the six-byte layout."""
    if snapshot.gear == NEUTRAL_GEAR:
        gear = 0
    else:
        try:
            gear = int(snapshot.gear)
        except ValueError as exc:
            raise ValueError(f"gear label {snapshot.gear!r} has no numeric encoding") from exc
    if not 0 <= snapshot.rpm <= 0xFFFF:
        raise ValueError(f"rpm out of range: {snapshot.rpm}")

    flags = 0
    if snapshot.high_beam:
        flags |= HIGH_BEAM_BIT
    if snapshot.hazards:
        flags |= HAZARDS_BIT
    if snapshot.engine_check:
        flags |= ENGINE_CHECK_BIT
    if snapshot.battery:
        flags |= BATTERY_BIT

    return bytes(
        (
            snapshot.speed,
            (snapshot.rpm >> 8) & 0xFF,
            snapshot.rpm & 0xFF,
            flags,
            snapshot.fuel,
            gear,
        )
    )


__all__ = [
    "FRAME_SIZE",
    "TelemetrySnapshot",
    "DISCONNECTED_SNAPSHOT",
    "decode",
    "encode",
]
