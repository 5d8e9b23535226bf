"""Step execution state machine."""

import asyncio
from datetime import timedelta

import pytest

from conftest import NOW, StubDrafter
from leadflow.collaborators import InMemoryEmailSender
from leadflow.config import EngineConfig, RetryConfig
from leadflow.constants import LEAD_EVENTS_TOPIC
from leadflow.contracts import (
    Condition,
    ConditionType,
    EnrollmentStatus,
    Lead,
    ManualTrigger,
    SendEmail,
    SetStatus,
    Step,
    Wait,
    WorkflowDefinition,
)
from leadflow.errors import DeliveryFailed, DraftingFailed, EmptyDraft
from leadflow.events import InMemoryEventBus
from leadflow.execute import StepExecutor, StepOutcome, evaluate_condition
from leadflow.tasks import TaskRegistry, TaskState


def _lead(lead_id="A", **kwargs):
    kwargs.setdefault("email", f"{lead_id}@example.com")
    return Lead(id=lead_id, owner="user-1", business_name=f"Biz {lead_id}", **kwargs)


async def _enrolled(repo, enroller, leads, steps, lead=None):
    lead = lead or _lead()
    leads.add(lead)
    wf = WorkflowDefinition(owner="user-1", name="Sequence", trigger=ManualTrigger())
    await repo.create_workflow(wf, steps)
    await repo.set_workflow_active(wf.id, True, NOW)
    enrollment = await enroller.enroll_lead(wf.id, lead.id, NOW)
    return wf, enrollment


@pytest.mark.asyncio
async def test_sequence_respects_delays_and_completes(repo, leads, enroller, executor, sender):
    steps = [
        Step(order=1, action=SendEmail(email_type="introduction")),
        Step(order=2, action=Wait(), delay_days=2),
        Step(order=3, action=SendEmail(email_type="follow_up"), delay_days=3),
    ]
    wf, enrollment = await _enrolled(repo, enroller, leads, steps)

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {enrollment.id: StepOutcome.ADVANCED}
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.current_step_order == 2
    assert stored.next_action_at == NOW + timedelta(days=2)
    assert [m.subject for m in sender.sent] == ["introduction for Biz A"]
    assert (await leads.get_lead("A")).last_contacted_at == NOW

    # Not yet due: nothing happens one second early
    early = await executor.run_due(NOW + timedelta(days=2, seconds=-1))
    assert early.outcomes == {}

    t2 = NOW + timedelta(days=2)
    await executor.run_due(t2)
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.current_step_order == 3
    assert stored.next_action_at == t2 + timedelta(days=3)

    t3 = t2 + timedelta(days=3)
    summary = await executor.run_due(t3)
    assert summary.outcomes == {enrollment.id: StepOutcome.COMPLETED}
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.status == EnrollmentStatus.COMPLETED
    assert stored.current_step_order == 4
    assert stored.completed_at == t3
    assert len(sender.sent) == 2

    # Completed enrollments are never due again
    assert await repo.list_due(t3 + timedelta(days=365), 10) == []
    kinds = [e.kind for e in await repo.list_events(enrollment.id)]
    assert kinds.count("step_executed") == 3
    assert kinds[-1] == "completed"


@pytest.mark.asyncio
async def test_cursor_never_decreases_or_skips(repo, leads, enroller, executor):
    steps = [Step(order=i, action=Wait(), delay_days=1) for i in range(1, 6)]
    _, enrollment = await _enrolled(repo, enroller, leads, steps)

    seen = [1]
    now = NOW
    for _ in range(10):
        now += timedelta(days=1)
        await executor.run_due(now)
        seen.append((await repo.get_enrollment(enrollment.id)).current_step_order)

    assert seen == sorted(seen)
    assert all(b - a in (0, 1) for a, b in zip(seen, seen[1:]))
    assert seen[-1] == 6


@pytest.mark.asyncio
async def test_cursor_past_last_step_completes(repo, leads, enroller, executor):
    steps = [Step(order=1, action=Wait()), Step(order=2, action=Wait())]
    wf, enrollment = await _enrolled(repo, enroller, leads, steps)
    await repo.set_workflow_active(wf.id, False, NOW)
    await repo.replace_steps(wf.id, steps[:1])
    await repo.set_workflow_active(wf.id, True, NOW)
    await repo.update_enrollment(enrollment.id, enrollment.version, current_step_order=2)

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {enrollment.id: StepOutcome.COMPLETED}


@pytest.mark.asyncio
async def test_transient_failure_retries_without_moving_schedule(repo, leads, enroller, sender):
    drafter = StubDrafter(failures=[DraftingFailed("timeout")])
    executor = StepExecutor(repo, leads, drafter, sender)
    steps = [Step(order=1, action=SendEmail()), Step(order=2, action=Wait(), delay_days=1)]
    _, enrollment = await _enrolled(repo, enroller, leads, steps)

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {enrollment.id: StepOutcome.RETRYING}
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.current_step_order == 1
    assert stored.next_action_at == NOW
    assert stored.attempts == 1
    assert stored.last_error == "timeout"
    assert sender.sent == []

    # Backing off: not retried in the same instant
    assert (await executor.run_due(NOW)).outcomes == {}

    later = NOW + timedelta(minutes=5)
    summary = await executor.run_due(later)
    assert summary.outcomes == {enrollment.id: StepOutcome.ADVANCED}
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.current_step_order == 2
    assert stored.attempts == 0
    assert stored.last_error is None
    assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_cancel_enrollment(repo, leads, enroller, sender):
    failures = [DraftingFailed("down"), EmptyDraft("blank"), DeliveryFailed("bounced")]
    drafter = StubDrafter(failures=failures)
    config = EngineConfig(retry=RetryConfig(max_attempts=3, backoff_base=1.0, jitter=0.0))
    executor = StepExecutor(repo, leads, drafter, sender, config=config)
    _, enrollment = await _enrolled(repo, enroller, leads, [Step(order=1, action=SendEmail())])

    now = NOW
    outcomes = []
    for _ in range(3):
        summary = await executor.run_due(now)
        outcomes.append(summary.outcomes[enrollment.id])
        now += timedelta(minutes=1)

    assert outcomes == [StepOutcome.RETRYING, StepOutcome.RETRYING, StepOutcome.CANCELLED]
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.status == EnrollmentStatus.CANCELLED
    assert stored.attempts == 3
    assert stored.last_error == "bounced"
    events = await repo.list_events(enrollment.id)
    assert [e.kind for e in events].count("step_failed") == 3
    assert events[-1].kind == "cancelled"


@pytest.mark.asyncio
async def test_missing_email_is_terminal(repo, leads, enroller, executor, drafter):
    lead = _lead("A", email=None)
    _, enrollment = await _enrolled(repo, enroller, leads, [Step(order=1, action=SendEmail())], lead)

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {enrollment.id: StepOutcome.CANCELLED}
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.attempts == 1
    assert "no email address" in stored.last_error
    assert drafter.calls == []


@pytest.mark.asyncio
async def test_missing_sender_is_terminal(repo, leads, enroller, drafter):
    sender = InMemoryEmailSender(senders={"someone-else": "x@example.com"})
    executor = StepExecutor(repo, leads, drafter, sender)
    _, enrollment = await _enrolled(repo, enroller, leads, [Step(order=1, action=SendEmail())])

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {enrollment.id: StepOutcome.CANCELLED}
    stored = await repo.get_enrollment(enrollment.id)
    assert "No outbound sender configured" in stored.last_error


@pytest.mark.asyncio
async def test_deleted_lead_is_terminal(repo, leads, enroller, executor):
    _, enrollment = await _enrolled(repo, enroller, leads, [Step(order=1, action=SetStatus(next_status="cold"))])
    leads.remove("A")

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {enrollment.id: StepOutcome.CANCELLED}


@pytest.mark.asyncio
async def test_task_registry_does_not_grow_with_passes(repo, leads, enroller, drafter, sender):
    tasks = TaskRegistry(keep_finished=5)
    executor = StepExecutor(repo, leads, drafter, sender, tasks=tasks)
    enrollments = []
    for i in range(20):
        _, e = await _enrolled(repo, enroller, leads, [Step(order=1, action=Wait())], _lead(f"L{i}"))
        enrollments.append(e)

    summary = await executor.run_due(NOW)
    assert summary.count(StepOutcome.COMPLETED) == 20
    assert executor.in_flight() == []
    assert len(tasks) == 5
    assert sum(tasks.status(e.id) == TaskState.IDLE for e in enrollments) == 15


@pytest.mark.asyncio
async def test_overlapping_passes_send_once(repo, leads, enroller, drafter):
    sender = InMemoryEmailSender()
    steps = [Step(order=1, action=SendEmail()), Step(order=2, action=SendEmail(), delay_days=1)]
    _, enrollment = await _enrolled(repo, enroller, leads, steps)

    # Separate executors stand in for separate scheduler processes
    first = StepExecutor(repo, leads, drafter, sender)
    second = StepExecutor(repo, leads, drafter, sender)
    results = await asyncio.gather(first.run_due(NOW), second.run_due(NOW), first.run_due(NOW))

    outcomes = [r.outcomes.get(enrollment.id) for r in results]
    assert outcomes.count(StepOutcome.ADVANCED) == 1
    assert len(sender.sent) == 1
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.current_step_order == 2


@pytest.mark.asyncio
async def test_stale_snapshot_cannot_execute(repo, leads, enroller, executor, sender):
    _, enrollment = await _enrolled(repo, enroller, leads, [Step(order=1, action=SendEmail())])
    stale = await repo.get_enrollment(enrollment.id)
    await executor.run_due(NOW)

    outcome = await executor.execute_enrollment(stale, NOW)
    assert outcome == StepOutcome.SKIPPED
    assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_set_status_publishes_status_change(repo, leads, enroller, executor, bus):
    steps = [Step(order=1, action=SetStatus(next_status="interested"))]
    wf, enrollment = await _enrolled(repo, enroller, leads, steps, _lead("A", contact_status="contacted"))

    await executor.run_due(NOW)

    assert (await leads.get_lead("A")).contact_status == "interested"
    assert bus.pending(LEAD_EVENTS_TOPIC) == 1
    async for raw, event in bus.subscribe(LEAD_EVENTS_TOPIC, lifespan=1):
        assert event.old_status == "contacted"
        assert event.new_status == "interested"
        assert event.source_workflow_id == wf.id
        await bus.ack(raw)
        break


@pytest.mark.asyncio
async def test_set_status_to_same_value_publishes_nothing(repo, leads, enroller, executor, bus):
    steps = [Step(order=1, action=SetStatus(next_status="contacted"))]
    await _enrolled(repo, enroller, leads, steps, _lead("A", contact_status="contacted"))

    await executor.run_due(NOW)
    assert bus.pending(LEAD_EVENTS_TOPIC) == 0


class _FlakyBus(InMemoryEventBus):
    def __init__(self):
        super().__init__()
        self.down = True

    async def publish(self, topic, event):
        if self.down:
            raise ConnectionError("redis down")
        await super().publish(topic, event)


@pytest.mark.asyncio
async def test_status_change_is_published_after_bus_outage(repo, leads, enroller, drafter, sender):
    bus = _FlakyBus()
    executor = StepExecutor(repo, leads, drafter, sender, events=bus)
    steps = [Step(order=1, action=SetStatus(next_status="interested"))]
    _, first = await _enrolled(repo, enroller, leads, steps, _lead("A"))
    _, second = await _enrolled(repo, enroller, leads, steps, _lead("B"))

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {first.id: StepOutcome.RETRYING, second.id: StepOutcome.RETRYING}
    assert [(await leads.get_lead(i)).contact_status for i in "AB"] == ["interested"] * 2
    stored = await repo.get_enrollment(first.id)
    assert stored.attempts == 1
    assert "Could not publish status change" in stored.last_error

    bus.down = False
    summary = await executor.run_due(NOW + timedelta(minutes=1))
    assert summary.outcomes == {first.id: StepOutcome.COMPLETED, second.id: StepOutcome.COMPLETED}
    assert bus.pending(LEAD_EVENTS_TOPIC) == 2
    published = []
    async for raw, event in bus.subscribe(LEAD_EVENTS_TOPIC, lifespan=1):
        published.append((event.lead_id, event.old_status, event.new_status))
        await bus.ack(raw)
        if len(published) == 2:
            break
    assert sorted(published) == [("A", "new", "interested"), ("B", "new", "interested")]


@pytest.mark.asyncio
async def test_unexpected_error_does_not_abort_pass(repo, leads, enroller, executor, sender, monkeypatch):
    steps = [Step(order=1, action=SendEmail(email_type="introduction"))]
    _, broken = await _enrolled(repo, enroller, leads, steps, _lead("A"))
    _, healthy = await _enrolled(repo, enroller, leads, steps, _lead("B"))
    real_get_lead = leads.get_lead

    async def get_lead(lead_id):
        if lead_id == "A":
            raise RuntimeError("corrupt row")
        return await real_get_lead(lead_id)

    monkeypatch.setattr(leads, "get_lead", get_lead)
    summary = await executor.run_due(NOW)
    assert summary.outcomes == {broken.id: StepOutcome.ERRORED, healthy.id: StepOutcome.COMPLETED}
    assert [m.lead_id for m in sender.sent] == ["B"]
    last = (await repo.list_events(broken.id))[-1]
    assert last.kind == "step_failed"
    assert "corrupt row" in last.message
    assert executor.in_flight() == []

    monkeypatch.setattr(leads, "get_lead", real_get_lead)
    later = NOW + timedelta(seconds=executor.config.lease_seconds)
    summary = await executor.run_due(later)
    assert summary.outcomes == {broken.id: StepOutcome.COMPLETED}


@pytest.mark.asyncio
@pytest.mark.parametrize("opened, expected_cursor", [(True, 4), (False, 2)])
async def test_condition_branches(repo, leads, enroller, executor, opened, expected_cursor):
    lead = _lead("A", last_contacted_at=NOW - timedelta(days=3))
    if opened:
        lead.email_opened_at = NOW - timedelta(days=1)
    steps = [
        Step(
            order=1,
            action=Condition(condition_type=ConditionType.EMAIL_OPENED, on_true=4),
        ),
        Step(order=2, action=SendEmail(email_type="nudge"), delay_days=2),
        Step(order=3, action=Wait(), delay_days=1),
        Step(order=4, action=SetStatus(next_status="engaged"), delay_days=1),
    ]
    _, enrollment = await _enrolled(repo, enroller, leads, steps, lead)

    await executor.run_due(NOW)
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.current_step_order == expected_cursor
    delay = steps[expected_cursor - 1].delay_days
    assert stored.next_action_at == NOW + timedelta(days=delay)
    events = await repo.list_events(enrollment.id)
    assert any(e.kind == "condition_evaluated" and e.details["result"] is opened for e in events)


def test_evaluate_condition_variants():
    lead = _lead(
        "A",
        contact_status="contacted",
        last_contacted_at=NOW - timedelta(days=10),
        email_opened_at=NOW - timedelta(days=12),
        email_replied_at=NOW - timedelta(days=2),
        last_interaction_at=NOW - timedelta(days=2),
    )

    def check(kind, value=None):
        return evaluate_condition(Condition(condition_type=kind, condition_value=value), lead, NOW)

    # Opened before the last email went out does not count
    assert check(ConditionType.EMAIL_OPENED) is False
    assert check(ConditionType.EMAIL_CLICKED) is False
    assert check(ConditionType.REPLY_RECEIVED) is True
    assert check(ConditionType.NO_RESPONSE) is False
    assert check(ConditionType.NO_RESPONSE, "1") is True
    assert check(ConditionType.STATUS_EQUALS, "contacted") is True
    assert check(ConditionType.STATUS_EQUALS, "interested") is False


@pytest.mark.asyncio
async def test_pause_keeps_in_flight_enrollments_running_by_default(repo, leads, enroller, executor):
    wf, enrollment = await _enrolled(repo, enroller, leads, [Step(order=1, action=Wait())])
    await enroller.pause_workflow(wf.id, NOW)

    summary = await executor.run_due(NOW)
    assert summary.outcomes == {enrollment.id: StepOutcome.COMPLETED}


@pytest.mark.asyncio
async def test_freeze_all_pause_holds_enrollments(repo, leads, enroller, drafter, sender):
    config = EngineConfig(pause_mode="freeze_all", batch_size=2)
    executor = StepExecutor(repo, leads, drafter, sender, config=config)
    wf, enrollment = await _enrolled(repo, enroller, leads, [Step(order=1, action=Wait())])
    frozen = [enrollment]
    for lead_id in ("B", "C"):
        leads.add(_lead(lead_id))
        frozen.append(await enroller.enroll_lead(wf.id, lead_id, NOW))
    await enroller.pause_workflow(wf.id, NOW)

    # A live workflow due after every frozen enrollment still gets its turn
    _, live = await _enrolled(repo, enroller, leads, [Step(order=1, action=Wait())], _lead("D"))
    later = NOW + timedelta(minutes=1)
    live = await repo.update_enrollment(live.id, live.version, next_action_at=later)

    summary = await executor.run_due(later)
    assert summary.outcomes == {live.id: StepOutcome.COMPLETED}
    for e in frozen:
        stored = await repo.get_enrollment(e.id)
        assert stored.status == EnrollmentStatus.ACTIVE
        assert stored.version == e.version
    assert await executor.execute_enrollment(frozen[0], later) == StepOutcome.SKIPPED

    await enroller.activate_workflow(wf.id, later)
    first = await executor.run_due(later)
    second = await executor.run_due(later)
    assert first.count(StepOutcome.COMPLETED) == 2
    assert second.count(StepOutcome.COMPLETED) == 1
    assert set(first.outcomes) | set(second.outcomes) == {e.id for e in frozen}
