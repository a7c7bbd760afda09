"""Single-producer, multi-consumer fan-out of telemetry snapshots."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, List

from ridelink.codec import TelemetrySnapshot

logger = logging.getLogger(__name__)


class TelemetryChannel:
    """Publishes snapshots to every subscriber in arrival order.

    Each subscriber owns a bounded queue. A slow subscriber loses its oldest
    queued snapshot rather than blocking the producer.
    """

    def __init__(self, maxsize: int = 64) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._queues: List[asyncio.Queue[TelemetrySnapshot]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, snapshot: TelemetrySnapshot) -> None:
        for queue in list(self._queues):
            if queue.full():
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
                logger.debug("Subscriber queue full; dropped oldest snapshot")
            queue.put_nowait(snapshot)

    def open(self) -> asyncio.Queue[TelemetrySnapshot]:
        queue: asyncio.Queue[TelemetrySnapshot] = asyncio.Queue(maxsize=self.maxsize)
        self._queues.append(queue)
        return queue

    def close(self, queue: asyncio.Queue[TelemetrySnapshot]) -> None:
        with contextlib.suppress(ValueError):
            self._queues.remove(queue)

    async def subscribe(self) -> AsyncIterator[TelemetrySnapshot]:
        queue = self.open()
        try:
            while True:
                yield await queue.get()
        finally:
            self.close(queue)


__all__ = ["TelemetryChannel"]
