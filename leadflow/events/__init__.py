"""Lead event bus factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LeadflowConfig, load_config
from .base import BaseEventBus, decode_event, encode_event
from .inmemory import InMemoryEventBus


def get_event_bus(
    backend: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> BaseEventBus:
    """Factory function to get the configured event bus."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("LEADFLOW_EVENT_BUS")
        or config.events.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventBus()
    elif backend == "redis":
        from .redis import RedisEventBus

        redis_conf = config.events.redis
        return RedisEventBus(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported event bus backend: {backend}")


__all__ = [
    "BaseEventBus",
    "InMemoryEventBus",
    "decode_event",
    "encode_event",
    "get_event_bus",
]
