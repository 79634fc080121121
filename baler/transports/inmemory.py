"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..models import StepMessage, utcnow
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, StepMessage]]):
    """Simple in-process queue for unit tests.

    ``published`` records every submission in order, which makes it easy to
    assert what a chain sent to the work queue.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, StepMessage]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.published: List[Tuple[str, StepMessage]] = []

    async def publish(self, queue: str, message: StepMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[queue].append(raw)
            self.published.append((queue, message))

    def _pop_available(self, queue: str) -> Optional[Tuple[str, StepMessage]]:
        now = utcnow()
        pending = self._queues[queue]
        for index, raw in enumerate(pending):
            if raw[1].available_at <= now:
                del pending[index]
                return raw
        return None

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, StepMessage], StepMessage]]:
        """Consume messages from queue once they are available.

        Args:
            queue: The queue to consume from
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                raw_message = self._pop_available(queue)
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.1)

    async def ack(self, raw_message: Tuple[str, StepMessage]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: Tuple[str, StepMessage], requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[1].queue].appendleft(raw_message)
