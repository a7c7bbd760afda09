"""Process-wide owner of the scanner, the session and their collaborators."""
from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

from ridelink.channel import TelemetryChannel
from ridelink.codec import TelemetrySnapshot
from ridelink.config import LinkConfig
from ridelink.errors import PermissionDenied, RidelinkError
from ridelink.event_log import EventLog, FileSink, LogEntry
from ridelink.negotiator import AuthStrategyResult, Negotiator
from ridelink.scanner import PeripheralHandle, Scanner, ScannerConfig
from ridelink.session import ClientFactory, ConnectionSession, SessionState
from ridelink.store import DirectorySink, LayoutStore, SqlLayoutStore

PermissionProvider = Callable[[], Union[bool, Awaitable[bool]]]


def _grant_all() -> bool:
    return True


class LinkManager:
    """Single owning context for the BLE link.

    Construct one per process, call :meth:`init` (or use ``async with``) and
    hand out the manager itself to callers. :meth:`teardown` stops scanning,
    closes the session and releases the layout store.
    """

    def __init__(
        self,
        config: LinkConfig | None = None,
        *,
        permissions: PermissionProvider | None = None,
        layout_store: LayoutStore | None = None,
        sink: FileSink | None = None,
        negotiator: Negotiator | None = None,
        client_factory: ClientFactory | None = None,
        scanner: Scanner | None = None,
    ) -> None:
        self.config = config or LinkConfig()
        self.log = EventLog(self.config.log_capacity)
        self.channel = TelemetryChannel(self.config.snapshot_queue_size)
        self.permissions: PermissionProvider = permissions or _grant_all
        self.sink: FileSink = sink or DirectorySink(self.config.data_dir)
        self._layout_store = layout_store
        self._owns_store = layout_store is None
        self._negotiator = negotiator
        self._client_factory = client_factory
        self.scanner = scanner or Scanner(ScannerConfig(adapter=self.config.adapter), log=self.log)
        self.scanner.log = self.log
        self._session: Optional[ConnectionSession] = None
        self._connect_task: Optional[asyncio.Task[SessionState]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def init(self) -> "LinkManager":
        if self._session is not None:
            return self
        if self._layout_store is None:
            self._layout_store = SqlLayoutStore(self.config.layout_db_path)
        self._session = ConnectionSession(
            self.config,
            log=self.log,
            channel=self.channel,
            negotiator=self._negotiator,
            layout_store=self._layout_store,
            client_factory=self._client_factory,
        )
        self.log.append("Link manager ready")
        return self

    async def teardown(self) -> None:
        if self._session is None:
            return
        await self._cancel_pending_connect()
        await self.scanner.stop()
        await self._session.disconnect()
        if self._owns_store and isinstance(self._layout_store, SqlLayoutStore):
            self._layout_store.close()
            self._layout_store = None
        self._session = None
        self.log.append("Link manager shut down")

    async def __aenter__(self) -> "LinkManager":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.teardown()

    @property
    def session(self) -> ConnectionSession:
        if self._session is None:
            raise RuntimeError("LinkManager is not initialised; call init() first")
        return self._session

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def failure(self) -> Optional[RidelinkError]:
        return self.session.failure

    @property
    def snapshot(self) -> TelemetrySnapshot:
        return self.session.snapshot

    @property
    def attempts(self) -> Tuple[AuthStrategyResult, ...]:
        return self.session.attempts

    @property
    def connected_handle(self) -> Optional[PeripheralHandle]:
        return self.session.handle

    def devices(self) -> List[PeripheralHandle]:
        return self.scanner.results()

    def logs(self) -> List[LogEntry]:
        return self.log.entries()

    def cached_layout(self, address: str) -> Optional[dict]:
        if self._layout_store is None:
            return None
        return self._layout_store.get(address)

    async def subscribe(self) -> AsyncIterator[TelemetrySnapshot]:
        async for snapshot in self.channel.subscribe():
            yield snapshot

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def start_scan(self) -> SessionState:
        session = self.session
        if not await self._check_permissions():
            error = PermissionDenied("Permissions not granted.")
            self.log.append(str(error))
            session.scan_failed(error)
            return session.state
        try:
            await self.scanner.start()
        except RidelinkError as exc:
            session.scan_failed(exc)
            return session.state
        session.begin_scan()
        return session.state

    async def stop_scan(self) -> SessionState:
        await self.scanner.stop()
        self.session.end_scan()
        return self.session.state

    async def connect(self, target: Union[PeripheralHandle, str]) -> SessionState:
        """Connect to ``target`` and return the state the attempt ended in.

        Any session already in flight is forced to Disconnected first.
        """
        session = self.session
        handle = self._resolve(target)
        await self._cancel_pending_connect()
        if self.scanner.running:
            await self.stop_scan()

        task = asyncio.create_task(session.connect(handle))
        self._connect_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return session.state
            raise
        finally:
            if self._connect_task is task and task.done():
                self._connect_task = None

    async def disconnect(self) -> SessionState:
        await self._cancel_pending_connect()
        await self.session.disconnect()
        return self.session.state

    def reset(self) -> SessionState:
        self.session.reset()
        return self.session.state

    def export_logs(self, destination: str | None = None) -> bool:
        return self.log.export(self.sink, destination or self.config.export_name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve(self, target: Union[PeripheralHandle, str]) -> PeripheralHandle:
        if isinstance(target, PeripheralHandle):
            return target
        handle = self.scanner.get(target)
        if handle is not None:
            return handle
        return PeripheralHandle(address=target, name=target)

    async def _check_permissions(self) -> bool:
        outcome: Any = self.permissions()
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return bool(outcome)

    async def _cancel_pending_connect(self) -> None:
        task = self._connect_task
        self._connect_task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = ["LinkManager", "PermissionProvider"]
