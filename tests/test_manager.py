"""Tests for the process-wide link manager."""
from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from typing import Any, List
from unittest import IsolatedAsyncioTestCase
from unittest.mock import patch

from ridelink.codec import decode
from ridelink.config import LinkConfig
from ridelink.errors import PermissionDenied
from ridelink.manager import LinkManager
from ridelink.session import SessionState

from tests.fakes import SAMPLE_FRAME, FakeClientFactory, MemoryLayoutStore


class _AdvertisingScanner:
    """BleakScanner stand-in that reports one cluster as soon as it starts."""

    def __init__(self, detection_callback=None, **_: Any) -> None:
        self.callback = detection_callback

    async def start(self) -> None:
        device = SimpleNamespace(address="AA:BB:CC:DD:EE:01", name="Yezdi Cluster")
        asyncio.get_running_loop().call_soon(self.callback, device, SimpleNamespace(local_name=None))

    async def stop(self) -> None:
        return None


class LinkManagerTest(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config = LinkConfig(frame_timeout=0.05, data_dir=Path(self._tmp.name))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _manager(self, *scripts, **kwargs: Any) -> LinkManager:
        self.factory = FakeClientFactory(*(scripts or ({"frames": [SAMPLE_FRAME]},)))
        kwargs.setdefault("layout_store", MemoryLayoutStore())
        return LinkManager(self.config, client_factory=self.factory, **kwargs)

    async def test_session_requires_init(self) -> None:
        manager = self._manager()
        with self.assertRaises(RuntimeError):
            _ = manager.state

    async def test_permission_denied_blocks_scanning(self) -> None:
        async with self._manager(permissions=lambda: False) as manager:
            state = await manager.start_scan()

            self.assertIs(state, SessionState.FAILED)
            self.assertIsInstance(manager.failure, PermissionDenied)
            self.assertFalse(manager.scanner.running)
            self.assertIn("Permissions not granted.", [e.message for e in manager.logs()])

    async def test_scan_then_connect(self) -> None:
        async def granted() -> bool:
            return True

        with patch("ridelink.scanner.BleakScanner", _AdvertisingScanner):
            async with self._manager(permissions=granted) as manager:
                self.assertIs(await manager.start_scan(), SessionState.SCANNING)
                await asyncio.sleep(0)
                self.assertEqual([d.name for d in manager.devices()], ["Yezdi Cluster"])

                state = await manager.connect("AA:BB:CC:DD:EE:01")

                self.assertIs(state, SessionState.SUBSCRIBED)
                self.assertFalse(manager.scanner.running)
                self.assertEqual(manager.connected_handle.name, "Yezdi Cluster")
                self.assertEqual(manager.snapshot, decode(SAMPLE_FRAME))

            with self.assertRaises(RuntimeError):
                _ = manager.state

    async def test_unknown_address_is_connected_by_address(self) -> None:
        async with self._manager() as manager:
            await manager.connect("11:22:33:44:55:66")
            self.assertEqual(manager.connected_handle.address, "11:22:33:44:55:66")
            self.assertEqual(self.factory.last.address, "11:22:33:44:55:66")

    async def test_new_connect_cancels_pending_attempt(self) -> None:
        async with self._manager({"hang_on_connect": True}, {"frames": [SAMPLE_FRAME]}) as manager:
            pending = asyncio.create_task(manager.connect("AA:01"))
            await asyncio.sleep(0.01)
            self.assertIs(manager.state, SessionState.CONNECTING)

            state = await manager.connect("AA:02")
            await pending

            self.assertIs(state, SessionState.SUBSCRIBED)
            self.assertEqual(manager.connected_handle.address, "AA:02")
            self.assertEqual(self.factory.clients[0].disconnect_calls, 1)
            messages = [e.message for e in manager.log.since(0)]
            self.assertIn("Connection attempt cancelled", messages)
            self.assertIn("Session state: Connecting -> Disconnected", messages)

    async def test_disconnect_and_reset(self) -> None:
        async with self._manager() as manager:
            await manager.connect("AA:01")

            self.assertIs(await manager.disconnect(), SessionState.DISCONNECTED)
            self.assertIs(manager.reset(), SessionState.IDLE)
            self.assertIsNone(manager.connected_handle)

    async def test_subscribers_receive_snapshots(self) -> None:
        received: List[Any] = []

        async with self._manager() as manager:

            async def consume() -> None:
                async for snapshot in manager.subscribe():
                    received.append(snapshot)
                    return

            consumer = asyncio.create_task(consume())
            await asyncio.sleep(0)
            await manager.connect("AA:01")
            await asyncio.wait_for(consumer, timeout=1.0)

        self.assertEqual(received, [decode(SAMPLE_FRAME)])

    async def test_default_layout_store_lives_in_data_dir(self) -> None:
        manager = LinkManager(self.config, client_factory=FakeClientFactory({"frames": [SAMPLE_FRAME]}))
        async with manager:
            await manager.connect("AA:01")
            layout = manager.cached_layout("AA:01")

        self.assertIn("services", layout)
        self.assertTrue(self.config.layout_db_path.exists())

    async def test_export_logs_to_data_dir(self) -> None:
        async with self._manager() as manager:
            self.assertTrue(manager.export_logs())
            self.assertEqual(manager.logs()[0].message, "Logs exported to: ble_logs.txt")

        text = (Path(self._tmp.name) / "ble_logs.txt").read_text(encoding="utf-8")
        self.assertIn("Link manager ready", text)


if __name__ == "__main__":
    unittest.main()
