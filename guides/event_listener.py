"""Example running the lead event listener against Redis."""

import asyncio
import sys

from leadflow import build_engine, get_event_bus, get_repository
from leadflow.config import load_config
from leadflow.constants import LEAD_EVENTS_TOPIC
from leadflow.contracts import StatusChanged


async def main():
    config = load_config()
    events = get_event_bus("redis", config=config)
    await events.connect()
    engine = build_engine(
        config=config, repository=get_repository(config=config), events=events
    )

    if len(sys.argv) > 2:
        # python event_listener.py <lead_id> <new_status> publishes one change
        await events.publish(
            LEAD_EVENTS_TOPIC,
            StatusChanged(lead_id=sys.argv[1], owner="user-1", new_status=sys.argv[2]),
        )
        print(f"📤 Published status change for {sys.argv[1]}")

    # Start listener
    await engine.listener.start(lifespan=30)
    print(f"📥 Handled {engine.listener.handled} events")

    await events.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
