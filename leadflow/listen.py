"""Lead event listener feeding the enroller."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import LEAD_EVENTS_TOPIC
from .contracts import LeadDeleted, StatusChanged
from .enroll import Enroller
from .events import BaseEventBus

logger = logging.getLogger(__name__)


class LeadEventListener:
    """Consume lead events and re-evaluate event-driven triggers.

    Trigger chains across workflows (a ``SetStatus`` step whose change
    enrolls the lead elsewhere) end because enrollment is insert-if-absent.
    """

    def __init__(
        self,
        events: BaseEventBus,
        enroller: Enroller,
        topic: str = LEAD_EVENTS_TOPIC,
    ) -> None:
        self._events = events
        self._enroller = enroller
        self._topic = topic
        self.handled = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen until ``lifespan`` seconds have elapsed, or forever."""

        async for raw_event, event in self._events.subscribe(self._topic, lifespan=lifespan):
            try:
                await self.handle(event)
            except Exception:
                logger.exception(f"Failed to handle {event.type} event {event.event_id}")
                await self._events.nack(raw_event, requeue=False)
                continue
            await self._events.ack(raw_event)

    async def handle(self, event: StatusChanged | LeadDeleted) -> None:
        if isinstance(event, StatusChanged):
            created = await self._enroller.on_status_changed(event)
            logger.info(
                f"Lead {event.lead_id} {event.old_status} -> {event.new_status}: "
                f"{len(created)} new enrollments"
            )
        elif isinstance(event, LeadDeleted):
            await self._enroller.on_lead_deleted(event)
        self.handled += 1
