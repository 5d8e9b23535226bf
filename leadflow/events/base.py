"""Base interface for the lead event bus."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import LeadDeleted, StatusChanged, lead_event_adapter

RawEventT = TypeVar("RawEventT")

LeadEventT = StatusChanged | LeadDeleted


def encode_event(event: LeadEventT) -> str:
    return lead_event_adapter.dump_json(event).decode()


def decode_event(data: str | bytes) -> LeadEventT:
    return lead_event_adapter.validate_json(data)


class BaseEventBus(Generic[RawEventT], metaclass=abc.ABCMeta):
    """Abstract publish/subscribe channel carrying lead events."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: LeadEventT) -> None:
        """Send a lead event to a topic."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEventT, LeadEventT]]:
        """Yield raw bus message and decoded event pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_event: RawEventT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_event: RawEventT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_event)
