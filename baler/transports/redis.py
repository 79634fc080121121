"""Redis transport for cross-process work queues."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis

from ..models import StepMessage, utcnow
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport for distributed workers.

    Ready messages live in a list per queue. Delayed messages wait in a
    sorted set scored by their availability time and are moved onto the
    list by consumers once due.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def _queue_key(queue: str) -> str:
        return f"baler:{queue}"

    @staticmethod
    def _delayed_key(queue: str) -> str:
        return f"baler:{queue}:delayed"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, queue: str, message: StepMessage) -> None:
        """Push message onto the queue, or the delayed set when not yet due."""
        if not self._redis:
            await self.connect()

        message_json = message.to_json()
        if message.delay > 0:
            await self._redis.zadd(
                self._delayed_key(queue), {message_json: message.available_at.timestamp()}
            )
        else:
            await self._redis.lpush(self._queue_key(queue), message_json)

    async def _promote_due(self, queue: str) -> None:
        now = utcnow().timestamp()
        due = await self._redis.zrangebyscore(self._delayed_key(queue), "-inf", now)
        for message_json in due:
            # Only the consumer that removes the entry may enqueue it.
            if await self._redis.zrem(self._delayed_key(queue), message_json):
                await self._redis.lpush(self._queue_key(queue), message_json)

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, StepMessage]]:
        """Consume messages from the Redis queue."""
        if not self._redis:
            await self.connect()

        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            await self._promote_due(queue)

            # Blocking pop with timeout
            result = await self._redis.brpop(self._queue_key(queue), timeout=1)

            if result:
                _, message_json = result
                try:
                    message = StepMessage.model_validate(json.loads(message_json))
                    yield message_json, message
                except (json.JSONDecodeError, ValueError) as e:
                    logger.error(f"Failed to parse message on queue {queue}: {e}")
                    continue

            # Brief sleep to prevent busy waiting when no messages
            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        if requeue:
            message = StepMessage.from_json(raw_message)
            if not self._redis:
                await self.connect()
            await self._redis.rpush(self._queue_key(message.queue), raw_message)
