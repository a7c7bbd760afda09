"""Simulation tests for the reconnection supervisor."""
from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from typing import Callable

from ridelink.config import LinkConfig
from ridelink.manager import LinkManager
from ridelink.reconnect import Reconnector
from ridelink.session import SessionState

from tests.fakes import SAMPLE_FRAME, FakeClientFactory, MemoryLayoutStore, link_down


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


class ReconnectorSimulationTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config = LinkConfig(frame_timeout=0.05, data_dir=Path(self._tmp.name))

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_retries_until_subscribed(self) -> None:
        factory = FakeClientFactory({"connect_error": link_down()}, {"frames": [SAMPLE_FRAME]})
        async with LinkManager(self.config, client_factory=factory, layout_store=MemoryLayoutStore()) as manager:
            reconnector = Reconnector(
                manager,
                "AA:BB:CC:DD:EE:FF",
                poll_interval=0.01,
                base_backoff=0.01,
                max_backoff=0.02,
            )

            await reconnector.run(runtime=0.2)

            self.assertEqual(reconnector.attempts, 2)
            self.assertEqual(len(factory.clients), 2)
            self.assertIs(manager.state, SessionState.DISCONNECTED)
            messages = [entry.message for entry in manager.log.since(0)]
            self.assertIn("Connect attempt 1 ended in Failed (LinkEstablishFailed)", messages)
            self.assertIn("Retrying in 0.01s", messages)
            self.assertEqual(messages[-1], "Reconnect supervisor stopped")

    async def test_reconnects_after_link_loss(self) -> None:
        factory = FakeClientFactory({"frames": [SAMPLE_FRAME]})
        async with LinkManager(self.config, client_factory=factory, layout_store=MemoryLayoutStore()) as manager:
            reconnector = Reconnector(manager, "AA:BB", poll_interval=0.01, base_backoff=0.01)
            runner = asyncio.create_task(reconnector.run())

            await _wait_until(lambda: manager.state is SessionState.SUBSCRIBED)
            factory.last.drop()
            await _wait_until(lambda: len(factory.clients) == 2 and manager.state is SessionState.SUBSCRIBED)

            reconnector.request_stop()
            await asyncio.wait_for(runner, timeout=1.0)

            self.assertEqual(reconnector.attempts, 2)
            self.assertIs(manager.state, SessionState.DISCONNECTED)
            self.assertEqual(factory.clients[1].disconnect_calls, 1)

    async def test_stop_interrupts_backoff(self) -> None:
        factory = FakeClientFactory({"connect_error": link_down()})
        async with LinkManager(self.config, client_factory=factory, layout_store=MemoryLayoutStore()) as manager:
            reconnector = Reconnector(manager, "AA:BB", base_backoff=5.0)
            runner = asyncio.create_task(reconnector.run())

            await _wait_until(lambda: reconnector.attempts == 1 and manager.state is SessionState.FAILED)
            reconnector.request_stop()
            await asyncio.wait_for(runner, timeout=1.0)

            self.assertEqual(reconnector.attempts, 1)


if __name__ == "__main__":
    unittest.main()
