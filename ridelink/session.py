"""Lifecycle of one physical link to the cluster."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple, Type

from bleak import BleakClient

from ridelink.catalog import CapabilityCatalog, Characteristic
from ridelink.channel import TelemetryChannel
from ridelink.codec import DISCONNECTED_SNAPSHOT, TelemetrySnapshot, decode
from ridelink.config import LinkConfig
from ridelink.errors import (
	BLE_ERRORS,
	AuthenticationExhausted,
	DiscoveryFailed,
	LinkEstablishFailed,
	MalformedFrame,
	RidelinkError,
	SessionStateError,
)
from ridelink.event_log import EventLog
from ridelink.negotiator import AuthStrategyResult, NegotiationContext, Negotiator, default_strategies
from ridelink.scanner import PeripheralHandle
from ridelink.store import LayoutStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]


class SessionState(enum.Enum):
	IDLE = "Idle"
	SCANNING = "Scanning"
	CONNECTING = "Connecting"
	DISCOVERING = "Discovering"
	NEGOTIATING = "Negotiating"
	SUBSCRIBED = "Subscribed"
	DISCONNECTED = "Disconnected"
	FAILED = "Failed"


ACTIVE_STATES: FrozenSet[SessionState] = frozenset(
	{
		SessionState.CONNECTING,
		SessionState.DISCOVERING,
		SessionState.NEGOTIATING,
		SessionState.SUBSCRIBED,
	}
)
ENDED_STATES: FrozenSet[SessionState] = frozenset({SessionState.DISCONNECTED, SessionState.FAILED})
_STREAMING_STATES: FrozenSet[SessionState] = frozenset({SessionState.NEGOTIATING, SessionState.SUBSCRIBED})
_LOSABLE_STATES: FrozenSet[SessionState] = ACTIVE_STATES - {SessionState.CONNECTING}

_STAGE_ERRORS: Dict[SessionState, Type[RidelinkError]] = {
	SessionState.CONNECTING: LinkEstablishFailed,
	SessionState.DISCOVERING: DiscoveryFailed,
	SessionState.NEGOTIATING: AuthenticationExhausted,
}
_FAILABLE_STATES: FrozenSet[SessionState] = frozenset(_STAGE_ERRORS)

_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
	SessionState.IDLE: frozenset({SessionState.SCANNING, SessionState.CONNECTING, SessionState.FAILED}),
	SessionState.SCANNING: frozenset({SessionState.IDLE, SessionState.CONNECTING, SessionState.FAILED}),
	SessionState.CONNECTING: frozenset({SessionState.DISCOVERING, SessionState.FAILED, SessionState.DISCONNECTED}),
	SessionState.DISCOVERING: frozenset({SessionState.NEGOTIATING, SessionState.FAILED, SessionState.DISCONNECTED}),
	SessionState.NEGOTIATING: frozenset({SessionState.SUBSCRIBED, SessionState.FAILED, SessionState.DISCONNECTED}),
	SessionState.SUBSCRIBED: frozenset({SessionState.DISCONNECTED}),
	SessionState.DISCONNECTED: frozenset({SessionState.IDLE}),
	SessionState.FAILED: frozenset({SessionState.IDLE}),
}


class ConnectionSession:
	"""State machine driving connect, discover, negotiate and subscribe.

	Every connection attempt and every teardown bumps :attr:`session_id`.
	Callbacks registered with bleak remember the id they were created under
	and are ignored once it is stale, so a late notification or disconnect
	event from an old link cannot touch the current one.
	"""

	def __init__(
		self,
		config: LinkConfig | None = None,
		*,
		log: EventLog | None = None,
		channel: TelemetryChannel | None = None,
		negotiator: Negotiator | None = None,
		layout_store: LayoutStore | None = None,
		client_factory: ClientFactory | None = None,
	) -> None:
		self.config = config or LinkConfig()
		self.log = log or EventLog(self.config.log_capacity)
		self.channel = channel
		self.negotiator = negotiator or Negotiator(default_strategies(self.config.auth_key))
		self.layout_store = layout_store
		self._client_factory: ClientFactory = client_factory or BleakClient

		self._state = SessionState.IDLE
		self._session_id = 0
		self._client: Optional[Any] = None
		self._notify_uuid: Optional[str] = None
		self._first_frame: Optional[asyncio.Event] = None

		self.handle: Optional[PeripheralHandle] = None
		self.catalog = CapabilityCatalog.empty()
		self.snapshot: TelemetrySnapshot = DISCONNECTED_SNAPSHOT
		self.failure: Optional[RidelinkError] = None
		self.attempts: Tuple[AuthStrategyResult, ...] = ()

	# ------------------------------------------------------------------
	# State
	# ------------------------------------------------------------------
	@property
	def state(self) -> SessionState:
		return self._state

	@property
	def session_id(self) -> int:
		return self._session_id

	@property
	def is_active(self) -> bool:
		return self._state in ACTIVE_STATES

	def _is_current(self, session_id: int) -> bool:
		return session_id == self._session_id

	def _transition(self, new_state: SessionState) -> None:
		old_state = self._state
		if new_state not in _TRANSITIONS[old_state]:
			raise SessionStateError(f"illegal transition {old_state.value} -> {new_state.value}")
		self._state = new_state
		self.log.append(f"Session state: {old_state.value} -> {new_state.value}")
		if new_state in ENDED_STATES or new_state is SessionState.IDLE:
			self._discard_link_state()

	def _discard_link_state(self) -> None:
		had_reading = self.snapshot != DISCONNECTED_SNAPSHOT
		self.handle = None
		self.catalog = CapabilityCatalog.empty()
		self.snapshot = DISCONNECTED_SNAPSHOT
		self._notify_uuid = None
		self._first_frame = None
		if had_reading and self.channel is not None:
			self.channel.publish(DISCONNECTED_SNAPSHOT)

	def reset(self) -> None:
		"""Return an ended session to Idle, ready for a new connection."""
		if self._state in ACTIVE_STATES:
			raise SessionStateError(f"cannot reset while {self._state.value}; disconnect first")
		if self._state in ENDED_STATES:
			self._transition(SessionState.IDLE)
		self.failure = None
		self.attempts = ()

	# ------------------------------------------------------------------
	# Scanning
	# ------------------------------------------------------------------
	def begin_scan(self) -> None:
		if self._state in ACTIVE_STATES:
			return
		if self._state in ENDED_STATES:
			self.reset()
		if self._state is SessionState.IDLE:
			self._transition(SessionState.SCANNING)

	def end_scan(self) -> None:
		if self._state is SessionState.SCANNING:
			self._transition(SessionState.IDLE)

	def scan_failed(self, error: RidelinkError) -> None:
		if self._state in ACTIVE_STATES:
			self.log.append(f"{error.reason}: {error}")
			return
		if self._state in ENDED_STATES:
			self.reset()
		self.failure = error
		self._transition(SessionState.FAILED)

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def connect(self, handle: PeripheralHandle) -> SessionState:
		"""Drive a new link to Subscribed or Failed and return the final state."""
		if self._state in ACTIVE_STATES:
			self.log.append("New connection requested; closing the current session first")
			await self.disconnect()
		if self._state in ENDED_STATES:
			self.reset()

		self._session_id += 1
		session_id = self._session_id
		self.handle = handle
		self.failure = None
		self.attempts = ()
		self._transition(SessionState.CONNECTING)
		self.log.append(f"Attempting connection to {handle.name} ({handle.address})")

		kwargs: Dict[str, Any] = {
			"disconnected_callback": lambda _client: self._on_link_lost(session_id),
			"timeout": self.config.connect_timeout,
		}
		if self.config.adapter:
			kwargs["adapter"] = self.config.adapter
		client: Any = None
		try:
			client = self._client_factory(handle.address, **kwargs)
			self._client = client
			return await self._establish(session_id, handle, client)
		except asyncio.CancelledError:
			await self._abandon(session_id, client)
			raise
		except Exception as exc:
			if not self._is_current(session_id) or self._state not in _FAILABLE_STATES:
				raise
			logger.exception("Connection attempt to %s raised", handle.address)
			error = _STAGE_ERRORS[self._state](f"Unexpected error while {self._state.value}: {exc}")
			error.__cause__ = exc
			return await self._fail(session_id, error)

	async def _establish(self, session_id: int, handle: PeripheralHandle, client: Any) -> SessionState:
		try:
			await client.connect()
		except BLE_ERRORS as exc:
			return await self._fail(session_id, LinkEstablishFailed(f"Connection Failed: {exc}"))
		if not self._is_current(session_id):
			await self._close_client(client, None)
			return self._state

		self.log.append("Connection successful. Discovering services...")
		self._transition(SessionState.DISCOVERING)
		try:
			catalog = CapabilityCatalog.from_bleak(client.services)
		except BLE_ERRORS as exc:
			return await self._fail(session_id, DiscoveryFailed(f"Service discovery failed: {exc}"))
		self.catalog = catalog
		self.log.append(f"Discovered {len(catalog)} services. Storing UUIDs.")
		self._remember_layout(handle, catalog)

		self._transition(SessionState.NEGOTIATING)
		first_frame = asyncio.Event()
		self._first_frame = first_frame

		async def _subscribe(char: Characteristic) -> None:
			await self._subscribe(session_id, client, char)

		context = NegotiationContext(
			client=client,
			catalog=catalog,
			log=self.log,
			subscribe=_subscribe,
			first_frame=first_frame,
			auth_key=self.config.auth_key,
			frame_timeout=self.config.frame_timeout,
		)
		outcome = await self.negotiator.negotiate(context)
		if not self._is_current(session_id):
			return self._state

		self.attempts = outcome.attempts
		if not outcome.succeeded:
			return await self._fail(
				session_id,
				AuthenticationExhausted(
					f"no strategy established a data stream after {len(outcome.attempts)} attempt(s)",
					outcome.attempts,
				),
			)

		self._transition(SessionState.SUBSCRIBED)
		self.log.append("Successfully subscribed to data stream.")
		return self._state

	async def disconnect(self) -> None:
		"""Tear the link down. Safe to call in any state."""
		client = self._client
		notify_uuid = self._notify_uuid
		if self._state in ACTIVE_STATES:
			self._session_id += 1
			self._client = None
			name = self.handle.name if self.handle else "device"
			self._transition(SessionState.DISCONNECTED)
			self.log.append(f"Disconnected from {name}.")
		if client is not None:
			self._client = None
			await self._close_client(client, notify_uuid)

	async def _fail(self, session_id: int, error: RidelinkError) -> SessionState:
		if not self._is_current(session_id):
			return self._state
		client = self._client
		notify_uuid = self._notify_uuid
		self._session_id += 1
		self._client = None
		self.failure = error
		self.log.append(f"{error.reason}: {error}")
		self._transition(SessionState.FAILED)
		if client is not None:
			await self._close_client(client, notify_uuid)
		return self._state

	async def _abandon(self, session_id: int, client: Any) -> None:
		notify_uuid = self._notify_uuid
		if self._is_current(session_id) and self._state in ACTIVE_STATES:
			self._session_id += 1
			self._client = None
			self.log.append("Connection attempt cancelled")
			self._transition(SessionState.DISCONNECTED)
		if client is not None:
			await self._close_client(client, notify_uuid)

	async def _close_client(self, client: Any, notify_uuid: Optional[str]) -> None:
		if notify_uuid is not None:
			with contextlib.suppress(*BLE_ERRORS):
				await client.stop_notify(notify_uuid)
		try:
			await client.disconnect()
		except BLE_ERRORS as exc:
			logger.warning("Disconnect encountered error: %s", exc)

	# ------------------------------------------------------------------
	# Callbacks
	# ------------------------------------------------------------------
	async def _subscribe(self, session_id: int, client: Any, char: Characteristic) -> None:
		def _handler(_sender: Any, data: bytearray) -> None:
			self._on_frame(session_id, data)

		await client.start_notify(char.uuid, _handler)
		if self._is_current(session_id):
			self._notify_uuid = char.uuid

	def _on_frame(self, session_id: int, data: bytes | bytearray) -> None:
		if not self._is_current(session_id) or self._state not in _STREAMING_STATES:
			logger.debug("Dropping frame from stale session %s", session_id)
			return
		try:
			snapshot = decode(data)
		except MalformedFrame as exc:
			self.log.append(f"Data Parse Error: {exc}")
			return

		self.snapshot = snapshot
		first_frame = self._first_frame
		if first_frame is not None and not first_frame.is_set():
			self.log.append(f"Data Parsed: Speed {snapshot.speed} km/h, RPM {snapshot.rpm}")
			first_frame.set()
		else:
			logger.debug("Data Parsed: Speed %s km/h, RPM %s", snapshot.speed, snapshot.rpm)
		if self.channel is not None:
			self.channel.publish(snapshot)

	def _on_link_lost(self, session_id: int) -> None:
		# While Connecting the pending connect() reports its own outcome.
		if not self._is_current(session_id) or self._state not in _LOSABLE_STATES:
			return
		self._session_id += 1
		self._client = None
		name = self.handle.name if self.handle else "device"
		self.log.append(f"Disconnected from {name}.")
		self._transition(SessionState.DISCONNECTED)

	def _remember_layout(self, handle: PeripheralHandle, catalog: CapabilityCatalog) -> None:
		if self.layout_store is None:
			return
		try:
			self.layout_store.put(handle.address, catalog.to_layout())
		except Exception as exc:
			self.log.append(f"Could not cache layout for {handle.address}: {exc}")
			logger.debug("Layout store write failed for %s", handle.address, exc_info=True)


__all__ = [
	"ACTIVE_STATES",
	"ConnectionSession",
	"SessionState",
]
