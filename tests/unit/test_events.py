"""Lead event bus and listener tests."""

import os

import pytest

from conftest import NOW
from leadflow.constants import LEAD_EVENTS_TOPIC
from leadflow.contracts import (
    EnrollmentStatus,
    Lead,
    LeadDeleted,
    ManualTrigger,
    SetStatus,
    StatusChanged,
    StatusChangedToTrigger,
    Step,
    WorkflowDefinition,
    utcnow,
)
from leadflow.events import InMemoryEventBus, decode_event, encode_event
from leadflow.events.redis import RedisEventBus
from leadflow.listen import LeadEventListener


def test_event_encoding_keeps_type():
    event = StatusChanged(lead_id="A", owner="user-1", old_status="new", new_status="hot")
    decoded = decode_event(encode_event(event))
    assert isinstance(decoded, StatusChanged)
    assert decoded == event

    deleted = decode_event(encode_event(LeadDeleted(lead_id="A", owner="user-1")))
    assert isinstance(deleted, LeadDeleted)


def test_status_change_rejects_blank_status():
    with pytest.raises(ValueError):
        StatusChanged(lead_id="A", owner="user-1", new_status="  ")


@pytest.mark.asyncio
async def test_inmemory_bus_publish_subscribe():
    bus = InMemoryEventBus()
    await bus.publish("lead-events", LeadDeleted(lead_id="A", owner="user-1"))
    assert bus.pending("lead-events") == 1

    received = False
    async for raw_event, event in bus.subscribe("lead-events"):
        assert event.lead_id == "A"
        await bus.ack(raw_event)
        received = True
        break

    assert received
    assert bus.pending("lead-events") == 0


@pytest.mark.asyncio
async def test_inmemory_bus_subscribe_honours_lifespan():
    bus = InMemoryEventBus()
    events = [e async for _, e in bus.subscribe("quiet", lifespan=0.2)]
    assert events == []


def test_redis_bus_defaults():
    bus = RedisEventBus()
    assert bus.host == "localhost"
    assert bus.port == 6379
    assert bus._queue_name(LEAD_EVENTS_TOPIC) == f"leadflow:{LEAD_EVENTS_TOPIC}"


@pytest.mark.asyncio
@pytest.mark.skipif(not os.getenv("TEST_REDIS_HOST"), reason="TEST_REDIS_HOST not set")
async def test_redis_bus_round_trip():
    bus = RedisEventBus(host=os.environ["TEST_REDIS_HOST"], prefix="leadflow-test")
    await bus.connect()
    try:
        await bus.publish("events", LeadDeleted(lead_id="A", owner="user-1"))
        async for raw_event, event in bus.subscribe("events", lifespan=3):
            assert event.lead_id == "A"
            await bus.ack(raw_event)
            break
    finally:
        await bus.disconnect()


class _FailingEnroller:
    async def on_status_changed(self, event, now=None):
        raise RuntimeError("boom")

    async def on_lead_deleted(self, event, now=None):
        return []


@pytest.mark.asyncio
async def test_listener_survives_handler_errors(bus):
    listener = LeadEventListener(bus, _FailingEnroller())
    await bus.publish(LEAD_EVENTS_TOPIC, StatusChanged(lead_id="A", owner="u", new_status="hot"))
    await bus.publish(LEAD_EVENTS_TOPIC, LeadDeleted(lead_id="A", owner="u"))

    await listener.start(lifespan=0.3)

    assert listener.handled == 1
    assert bus.pending(LEAD_EVENTS_TOPIC) == 0


@pytest.mark.asyncio
async def test_listener_enrolls_on_status_change(repo, leads, enroller, bus):
    leads.add(Lead(id="A", owner="user-1", contact_status="interested"))
    wf = WorkflowDefinition(
        owner="user-1", name="Closer", trigger=StatusChangedToTrigger(to="interested")
    )
    await repo.create_workflow(wf, [Step(order=1, action=SetStatus(next_status="won"))])
    await repo.set_workflow_active(wf.id, True, NOW)

    listener = LeadEventListener(bus, enroller)
    await bus.publish(
        LEAD_EVENTS_TOPIC,
        StatusChanged(lead_id="A", owner="user-1", old_status="new", new_status="interested"),
    )
    await listener.start(lifespan=0.3)

    enrollments = await repo.list_enrollments(workflow_id=wf.id)
    assert [e.lead_id for e in enrollments] == ["A"]
    assert enrollments[0].trigger_type == "status_changed_to"


@pytest.mark.asyncio
async def test_cross_workflow_status_loop_terminates(repo, leads, enroller, executor, bus):
    """Two workflows that flip a lead's status back and forth stop after one lap."""

    leads.add(Lead(id="A", owner="user-1", email="a@example.com", contact_status="new"))
    ping = WorkflowDefinition(owner="user-1", name="Ping", trigger=StatusChangedToTrigger(to="interested"))
    pong = WorkflowDefinition(owner="user-1", name="Pong", trigger=StatusChangedToTrigger(to="qualified"))
    await repo.create_workflow(ping, [Step(order=1, action=SetStatus(next_status="qualified"))])
    await repo.create_workflow(pong, [Step(order=1, action=SetStatus(next_status="interested"))])
    for wf in (ping, pong):
        await repo.set_workflow_active(wf.id, True, NOW)

    listener = LeadEventListener(bus, enroller)
    await leads.update_status("A", "interested")
    await bus.publish(
        LEAD_EVENTS_TOPIC,
        StatusChanged(lead_id="A", owner="user-1", old_status="new", new_status="interested"),
    )

    # The listener stamps enrollments with the wall clock
    for _ in range(10):
        if bus.pending(LEAD_EVENTS_TOPIC) == 0 and not await repo.list_due(utcnow(), 100):
            break
        await listener.start(lifespan=0.15)
        await executor.run_due(utcnow())
    else:
        pytest.fail("status changes kept cascading")

    for wf in (ping, pong):
        enrollments = await repo.list_enrollments(workflow_id=wf.id)
        assert len(enrollments) == 1
        assert enrollments[0].status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_lead_deleted_event_cancels(repo, leads, enroller, bus):
    leads.add(Lead(id="A", owner="user-1"))
    wf = WorkflowDefinition(owner="user-1", name="Manual", trigger=ManualTrigger())
    await repo.create_workflow(wf, [Step(order=1, action=SetStatus(next_status="x"), delay_days=3)])
    await repo.set_workflow_active(wf.id, True, NOW)
    enrollment = await enroller.enroll_lead(wf.id, "A", NOW)

    listener = LeadEventListener(bus, enroller)
    await listener.handle(LeadDeleted(lead_id="A", owner="user-1"))

    stored = await repo.get_enrollment(enrollment.id)
    assert stored.status == EnrollmentStatus.CANCELLED
    assert listener.handled == 1
