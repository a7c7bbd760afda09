"""Telemetry link to a BLE instrument cluster.

The modules are layered leaves first: ``codec`` and ``catalog`` are pure,
``negotiator`` and ``session`` drive the link, and ``manager`` owns one of each
for the whole process.
"""
from .codec import DISCONNECTED_SNAPSHOT, TelemetrySnapshot, decode, encode
from .catalog import CapabilityCatalog, CapabilityFlag, Characteristic, Service
from .event_log import EventLog, LogEntry
from .manager import LinkManager
from .scanner import PeripheralHandle, Scanner
from .session import ConnectionSession, SessionState

__all__ = [
    "DISCONNECTED_SNAPSHOT",
    "TelemetrySnapshot",
    "decode",
    "encode",
    "CapabilityCatalog",
    "CapabilityFlag",
    "Characteristic",
    "Service",
    "EventLog",
    "LogEntry",
    "LinkManager",
    "PeripheralHandle",
    "Scanner",
    "ConnectionSession",
    "SessionState",
]
