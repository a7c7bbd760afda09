"""BLE discovery of candidate clusters."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from ridelink.errors import BLE_ERRORS, PermissionDenied, RadioUnavailable
from ridelink.event_log import EventLog

logger = logging.getLogger(__name__)

DeviceCallback = Callable[["PeripheralHandle"], Union[None, Awaitable[None]]]

_DENIAL_MARKERS = ("denied", "unauthorized", "not authorized", "permission")


@dataclass(frozen=True, slots=True)
class PeripheralHandle:
	"""Identity of a discovered peripheral. ``address`` is the identity key."""

	address: str
	name: str

	@classmethod
	def from_bleak(
		cls,
		device: BLEDevice,
		advertisement: AdvertisementData | None = None,
	) -> Optional["PeripheralHandle"]:
		name = device.name or None
		if not name and advertisement is not None:
			name = getattr(advertisement, "local_name", None) or None
		if not name:
			return None
		return cls(address=device.address, name=name)

	def to_dict(self) -> Dict[str, Any]:
		return {"address": self.address, "name": self.name}


@dataclass(slots=True)
class ScannerConfig:
	"""Configuration bundle used by :class:`Scanner`."""

	service_uuids: Sequence[str] | None = None
	name_allowlist: Sequence[str] | None = None
	adapter: Optional[str] = None
	scanning_mode: Optional[str] = None
	on_device: Optional[DeviceCallback] = None
	detection_kwargs: Dict[str, Any] = field(default_factory=dict)

	def allows(self, handle: PeripheralHandle) -> bool:
		if self.name_allowlist and handle.name not in self.name_allowlist:
			return False
		return True

	def bleak_kwargs(self) -> Dict[str, Any]:
		kwargs = dict(self.detection_kwargs)
		if self.service_uuids and "service_uuids" not in kwargs:
			kwargs["service_uuids"] = list(self.service_uuids)
		if self.adapter and "adapter" not in kwargs:
			kwargs["adapter"] = self.adapter
		if self.scanning_mode and "scanning_mode" not in kwargs:
			kwargs["scanning_mode"] = self.scanning_mode
		return kwargs


def classify_scan_error(exc: BaseException) -> PermissionDenied | RadioUnavailable:
	"""Map a failure to enter scanning into the error taxonomy."""
	if isinstance(exc, PermissionError):
		return PermissionDenied(f"Bluetooth permission denied: {exc}")
	reason = getattr(exc, "reason", None)
	text = f"{getattr(reason, 'name', reason) or ''} {exc}".lower()
	if any(marker in text for marker in _DENIAL_MARKERS):
		return PermissionDenied(f"Bluetooth permission denied: {exc}")
	return RadioUnavailable(f"Bluetooth radio unavailable: {exc}")


class Scanner:
	"""Indefinite BLE scan that collects named peripherals once each."""

	def __init__(self, config: ScannerConfig | None = None, *, log: EventLog | None = None) -> None:
		self.config = config or ScannerConfig()
		self.log = log or EventLog()
		self._results: Dict[str, PeripheralHandle] = {}
		self._scanner: Optional[BleakScanner] = None
		self._running = False
		self._loop: Optional[asyncio.AbstractEventLoop] = None

	@property
	def running(self) -> bool:
		return self._running

	def reset(self) -> None:
		self._results.clear()

	async def start(self) -> None:
		"""Begin scanning. Raises ``PermissionDenied`` or ``RadioUnavailable``."""
		if self._running:
			return
		self.reset()
		self._loop = asyncio.get_running_loop()
		scanner = BleakScanner(detection_callback=self._on_detection, **self.config.bleak_kwargs())
		# Advertisements may arrive before start() returns.
		self._scanner = scanner
		self._running = True
		try:
			await scanner.start()
		except BLE_ERRORS as exc:
			self._scanner = None
			self._running = False
			error = classify_scan_error(exc)
			self.log.append(f"Scan Error: {error}")
			logger.warning("BLE scan could not start: %s", exc)
			raise error from exc
		self.log.append("Scanning started...")

	async def stop(self) -> None:
		scanner = self._scanner
		if not self._running or scanner is None:
			return
		# Detach first so late advertisements are dropped.
		self._running = False
		self._scanner = None
		try:
			await scanner.stop()
		except BLE_ERRORS as exc:
			self.log.append(f"Scan stop error: {exc}")
			logger.warning("BLE scan stop failed: %s", exc)
		self.log.append("Scan stopped.")

	def results(self) -> List[PeripheralHandle]:
		return list(self._results.values())

	def get(self, address: str) -> Optional[PeripheralHandle]:
		handle = self._results.get(address)
		if handle is not None:
			return handle
		lowered = address.lower()
		for candidate in self._results.values():
			if candidate.address.lower() == lowered:
				return candidate
		return None

	def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData | None) -> None:
		if not self._running:
			return
		handle = PeripheralHandle.from_bleak(device, advertisement)
		if handle is None or not self.config.allows(handle):
			return
		if handle.address in self._results:
			return

		self._results[handle.address] = handle
		self.log.append(f"Discovered {handle.name} ({handle.address})")
		if self.config.on_device:
			self._dispatch_callback(handle)

	def _dispatch_callback(self, handle: PeripheralHandle) -> None:
		if not self.config.on_device:
			return
		try:
			outcome = self.config.on_device(handle)
			if asyncio.iscoroutine(outcome):
				loop = self._loop or asyncio.get_event_loop()
				loop.create_task(outcome)
		except Exception:  # pragma: no cover - diagnostic path
			logger.exception("scanner callback raised an exception")


async def discover(
	timeout: float = 6.0,
	*,
	service_uuids: Sequence[str] | None = None,
	names: Sequence[str] | None = None,
	adapter: Optional[str] = None,
	scanning_mode: Optional[str] = None,
	log: EventLog | None = None,
) -> List[PeripheralHandle]:
	"""Scan for ``timeout`` seconds and return the named peripherals seen."""
	config = ScannerConfig(
		service_uuids=service_uuids,
		name_allowlist=names,
		adapter=adapter,
		scanning_mode=scanning_mode,
	)
	scanner = Scanner(config, log=log)
	await scanner.start()
	try:
		await asyncio.sleep(timeout)
	finally:
		await scanner.stop()
	return scanner.results()


__all__ = [
	"PeripheralHandle",
	"ScannerConfig",
	"Scanner",
	"classify_scan_error",
	"discover",
]
