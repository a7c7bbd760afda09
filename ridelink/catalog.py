"""In-memory model of a peripheral's GATT layout."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import reduce
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from bleak.backends.service import BleakGATTServiceCollection


class CapabilityFlag(enum.Flag):
    READ = enum.auto()
    WRITE = enum.auto()
    WRITE_WITHOUT_RESPONSE = enum.auto()
    NOTIFY = enum.auto()
    INDICATE = enum.auto()


NO_CAPABILITIES = CapabilityFlag(0)

_BLEAK_PROPERTIES: Dict[str, CapabilityFlag] = {
    "read": CapabilityFlag.READ,
    "write": CapabilityFlag.WRITE,
    "write-without-response": CapabilityFlag.WRITE_WITHOUT_RESPONSE,
    "notify": CapabilityFlag.NOTIFY,
    "indicate": CapabilityFlag.INDICATE,
}

# Keys of the cached layout record, one per flag.
_LAYOUT_KEYS: Tuple[Tuple[str, CapabilityFlag], ...] = (
    ("isReadable", CapabilityFlag.READ),
    ("isWritableWithResponse", CapabilityFlag.WRITE),
    ("isWritableWithoutResponse", CapabilityFlag.WRITE_WITHOUT_RESPONSE),
    ("isNotifiable", CapabilityFlag.NOTIFY),
    ("isIndicatable", CapabilityFlag.INDICATE),
)

Capabilities = Union[CapabilityFlag, Iterable[CapabilityFlag]]


def flags_from_properties(properties: Iterable[str]) -> CapabilityFlag:
    """Translate bleak property strings; unknown properties are ignored."""
    flags = NO_CAPABILITIES
    for prop in properties:
        flags |= _BLEAK_PROPERTIES.get(str(prop).lower(), NO_CAPABILITIES)
    return flags


def _coerce(capabilities: Capabilities) -> CapabilityFlag:
    if isinstance(capabilities, CapabilityFlag):
        return capabilities
    return reduce(lambda acc, flag: acc | flag, capabilities, NO_CAPABILITIES)


@dataclass(frozen=True, slots=True)
class Characteristic:
    uuid: str
    service_uuid: str
    flags: CapabilityFlag = NO_CAPABILITIES

    @property
    def readable(self) -> bool:
        return bool(self.flags & CapabilityFlag.READ)

    @property
    def writable(self) -> bool:
        return bool(self.flags & (CapabilityFlag.WRITE | CapabilityFlag.WRITE_WITHOUT_RESPONSE))

    @property
    def notifiable(self) -> bool:
        return bool(self.flags & (CapabilityFlag.NOTIFY | CapabilityFlag.INDICATE))

    def to_layout(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"uuid": self.uuid}
        for key, flag in _LAYOUT_KEYS:
            payload[key] = bool(self.flags & flag)
        return payload


@dataclass(frozen=True, slots=True)
class Service:
    uuid: str
    characteristics: Tuple[Characteristic, ...] = ()


class CapabilityCatalog:
    """Read-only view of the services discovered on one connection.

    Iteration order is discovery order. :meth:`find` relies on it: the first
    characteristic carrying a requested capability wins, since nothing else
    identifies the data characteristic without vendor documentation.
    """

    __slots__ = ("_services",)

    def __init__(self, services: Iterable[Service] = ()) -> None:
        ordered: Dict[str, Service] = {}
        for service in services:
            ordered.setdefault(service.uuid, service)
        self._services: Tuple[Service, ...] = tuple(ordered.values())

    @classmethod
    def empty(cls) -> "CapabilityCatalog":
        return cls()

    @classmethod
    def from_bleak(cls, services: BleakGATTServiceCollection | Iterable[Any]) -> "CapabilityCatalog":
        built: List[Service] = []
        for service in services:
            service_uuid = str(service.uuid)
            characteristics = tuple(
                Characteristic(
                    uuid=str(char.uuid),
                    service_uuid=service_uuid,
                    flags=flags_from_properties(getattr(char, "properties", ()) or ()),
                )
                for char in service.characteristics
            )
            built.append(Service(uuid=service_uuid, characteristics=characteristics))
        return cls(built)

    @classmethod
    def from_layout(cls, layout: Mapping[str, Any]) -> "CapabilityCatalog":
        services: List[Service] = []
        for service_uuid, entries in (layout.get("services") or {}).items():
            characteristics = []
            for entry in entries:
                flags = NO_CAPABILITIES
                for key, flag in _LAYOUT_KEYS:
                    if entry.get(key):
                        flags |= flag
                characteristics.append(
                    Characteristic(uuid=str(entry["uuid"]), service_uuid=str(service_uuid), flags=flags)
                )
            services.append(Service(uuid=str(service_uuid), characteristics=tuple(characteristics)))
        return cls(services)

    def to_layout(self) -> Dict[str, Any]:
        return {
            "services": {
                service.uuid: [char.to_layout() for char in service.characteristics]
                for service in self._services
            }
        }

    @property
    def services(self) -> Tuple[Service, ...]:
        return self._services

    @property
    def is_empty(self) -> bool:
        return not self._services

    def service(self, uuid: str) -> Optional[Service]:
        for service in self._services:
            if service.uuid == uuid:
                return service
        return None

    def characteristics(self) -> Iterator[Characteristic]:
        for service in self._services:
            yield from service.characteristics

    def find(self, capabilities: Capabilities) -> Optional[Characteristic]:
        wanted = _coerce(capabilities)
        if not wanted:
            return None
        for char in self.characteristics():
            if char.flags & wanted:
                return char
        return None

    def __len__(self) -> int:
        return len(self._services)

    def __iter__(self) -> Iterator[Service]:
        return iter(self._services)

    def __repr__(self) -> str:
        total = sum(len(service.characteristics) for service in self._services)
        return f"<CapabilityCatalog services={len(self._services)} characteristics={total}>"


__all__ = [
    "CapabilityFlag",
    "Characteristic",
    "Service",
    "CapabilityCatalog",
    "flags_from_properties",
]
