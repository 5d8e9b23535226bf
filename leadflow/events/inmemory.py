"""In-process event bus for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from .base import BaseEventBus, LeadEventT, encode_event


class InMemoryEventBus(BaseEventBus[Tuple[str, LeadEventT]]):
    """Per-topic FIFO queues held in memory."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, LeadEventT]]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: LeadEventT) -> None:
        raw = (encode_event(event), event)
        async with self._lock:
            self._queues[topic].append(raw)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, LeadEventT], LeadEventT]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                raw_event = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_event is not None:
                yield raw_event, raw_event[1]
                continue

            await asyncio.sleep(0.1)

    async def ack(self, raw_event: Tuple[str, LeadEventT]) -> None:
        """No-op acknowledgment for the in-memory bus."""
        pass
