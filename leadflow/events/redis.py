"""Redis event bus for cross-process lead events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from .base import BaseEventBus, LeadEventT, decode_event, encode_event

logger = logging.getLogger(__name__)


class RedisEventBus(BaseEventBus[Tuple[str, str]]):
    """Redis lists used as durable per-topic queues."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "leadflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: LeadEventT) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), encode_event(event))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], LeadEventT]]:
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, payload = result
                try:
                    event = decode_event(payload)
                except ValidationError as e:
                    logger.warning(f"Dropping malformed lead event: {e}")
                    continue
                yield (queue_name, payload), event

    async def ack(self, raw_event: Tuple[str, str]) -> None:
        """No-op acknowledgment (the event was popped on receipt)."""
        pass

    async def nack(self, raw_event: Tuple[str, str], requeue: bool = True) -> None:
        if requeue and self._redis:
            queue_name, payload = raw_event
            await self._redis.rpush(queue_name, payload)
