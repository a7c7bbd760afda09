"""Caller-side reconnection supervisor.

The core never retries a failed or dropped link on its own. Callers that want
a persistent link wrap the manager in a :class:`Reconnector`, which reconnects
with exponential backoff until stopped.
"""
from __future__ import annotations

import asyncio
import logging
from time import monotonic
from typing import Optional, Union

from ridelink.manager import LinkManager
from ridelink.scanner import PeripheralHandle
from ridelink.session import SessionState

logger = logging.getLogger(__name__)


class Reconnector:
    """Keep a session to one peripheral alive with exponential backoff."""

    def __init__(
        self,
        manager: LinkManager,
        target: Union[PeripheralHandle, str],
        *,
        poll_interval: float = 1.0,
        base_backoff: float = 2.0,
        max_backoff: float = 60.0,
    ) -> None:
        self.manager = manager
        self.target = target
        self.poll_interval = max(0.01, poll_interval)
        self.base_backoff = max(0.01, base_backoff)
        self.max_backoff = max(self.base_backoff, max_backoff)
        self.attempts = 0
        self._stop_event: Optional[asyncio.Event] = None

    async def run(self, runtime: Optional[float] = None) -> None:
        """Reconnect until :meth:`request_stop` is called or ``runtime`` elapses."""
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        deadline = monotonic() + runtime if runtime else None
        backoff = self.base_backoff
        log = self.manager.log

        log.append("Reconnect supervisor started")
        try:
            while not stop_event.is_set():
                if deadline and monotonic() >= deadline:
                    break

                self.attempts += 1
                log.append(f"Connect attempt {self.attempts}")
                state = await self.manager.connect(self.target)
                if state is SessionState.SUBSCRIBED:
                    backoff = self.base_backoff
                    await self._connected_loop(deadline, stop_event)
                else:
                    failure = self.manager.failure
                    reason = failure.reason if failure is not None else state.value
                    log.append(f"Connect attempt {self.attempts} ended in {state.value} ({reason})")

                if stop_event.is_set():
                    break
                if deadline and monotonic() >= deadline:
                    break

                log.append(f"Retrying in {backoff:g}s")
                await self._sleep_with_stop(backoff, stop_event, deadline)
                backoff = min(backoff * 2, self.max_backoff)
        finally:
            stop_event.set()
            await self.manager.disconnect()
            log.append("Reconnect supervisor stopped")

    def request_stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

    async def _connected_loop(self, deadline: Optional[float], stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            if deadline and monotonic() >= deadline:
                return
            if self.manager.state is not SessionState.SUBSCRIBED:
                logger.info("Link to %s lost; scheduling reconnect", self.target)
                return
            await self._sleep_with_stop(self.poll_interval, stop_event, deadline)

    async def _sleep_with_stop(
        self,
        duration: float,
        stop_event: asyncio.Event,
        deadline: Optional[float],
    ) -> None:
        if duration <= 0:
            return
        wait_time = duration
        if deadline:
            wait_time = min(wait_time, max(0.0, deadline - monotonic()))
            if wait_time <= 0:
                return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
        except asyncio.TimeoutError:
            pass


__all__ = ["Reconnector"]
