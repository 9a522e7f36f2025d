"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import RunMessage
from .base import BaseTransport

# raw messages are (topic, message) pairs so a nack can requeue them
RawMessage = Tuple[str, RunMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RunMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, topic: str, message: RunMessage) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            self._queues[topic].append(message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, RunMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                message = self._queues[topic].popleft() if self._queues[topic] else None
            if message is not None:
                yield (topic, message), message
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            topic, message = raw_message
            async with self._lock:
                self._queues[topic].append(message)
