import asyncio
import sqlite3
from datetime import timedelta

import pytest

from conftest import NOW
from leadflow.contracts import (
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    InactivityTrigger,
    SendEmail,
    Step,
    Wait,
    WorkflowDefinition,
)
from leadflow.errors import WorkflowNotFound
from leadflow.persistence import SQLiteWorkflowRepository


def _workflow(**kwargs):
    return WorkflowDefinition(owner="user-1", name="Nurture", **kwargs)


def _steps(n=2):
    return [Step(order=i, action=SendEmail(), delay_days=i - 1) for i in range(1, n + 1)]


def _enrollment(workflow_id, lead_id="lead-1", at=NOW):
    return Enrollment(workflow_id=workflow_id, lead_id=lead_id, owner="user-1", next_action_at=at)


@pytest.mark.asyncio
async def test_workflow_crud(repo):
    wf = _workflow(trigger=InactivityTrigger(days=30))
    await repo.create_workflow(wf, _steps(3))

    stored = await repo.get_workflow(wf.id)
    assert stored is not None
    assert stored.name == "Nurture"
    assert stored.is_active is False
    assert stored.trigger == InactivityTrigger(days=30)
    assert [s.order for s in await repo.get_steps(wf.id)] == [1, 2, 3]

    stored.name = "Renamed"
    await repo.update_workflow(stored)
    await repo.set_workflow_active(wf.id, True, NOW)
    stored = await repo.get_workflow(wf.id)
    assert stored.name == "Renamed"
    assert stored.is_active is True

    assert [w.id for w in await repo.list_workflows(owner="user-1", active=True)] == [wf.id]
    assert await repo.list_workflows(owner="someone-else") == []

    await repo.delete_workflow(wf.id, NOW)
    assert await repo.get_workflow(wf.id) is None
    assert await repo.get_steps(wf.id) == []
    with pytest.raises(WorkflowNotFound):
        await repo.set_workflow_active(wf.id, True, NOW)


@pytest.mark.asyncio
async def test_enroll_if_absent_is_idempotent(repo):
    wf = _workflow()
    await repo.create_workflow(wf, _steps())

    results = await asyncio.gather(
        repo.enroll_if_absent(_enrollment(wf.id)),
        repo.enroll_if_absent(_enrollment(wf.id)),
    )
    assert sorted(results) == [False, True]
    active = await repo.list_enrollments(workflow_id=wf.id, status=EnrollmentStatus.ACTIVE)
    assert len(active) == 1

    # Once the first enrollment is over the lead may be enrolled again
    first = active[0]
    await repo.update_enrollment(
        first.id, first.version, status=EnrollmentStatus.COMPLETED, completed_at=NOW
    )
    assert await repo.enroll_if_absent(_enrollment(wf.id))
    assert await repo.lead_ids_with_status(wf.id, [EnrollmentStatus.COMPLETED]) == {"lead-1"}


@pytest.mark.asyncio
async def test_claim_is_compare_and_swap(repo):
    wf = _workflow()
    await repo.create_workflow(wf, _steps())
    enrollment = _enrollment(wf.id)
    await repo.enroll_if_absent(enrollment)

    lease = NOW + timedelta(minutes=5)
    first = await repo.claim_enrollment(enrollment.id, 1, "token-a", lease, NOW)
    second = await repo.claim_enrollment(enrollment.id, 1, "token-b", lease, NOW)
    assert first is not None
    assert first.lease_token == "token-a"
    assert first.version == 2
    assert second is None

    # Leased enrollments are not due until the lease runs out
    assert await repo.list_due(NOW, 10) == []
    assert [e.id for e in await repo.list_due(lease, 10)] == [enrollment.id]

    assert await repo.update_enrollment(enrollment.id, 1, attempts=1) is None
    updated = await repo.update_enrollment(
        enrollment.id, 2, current_step_order=2, lease_token=None, lease_until=None
    )
    assert updated.current_step_order == 2
    assert updated.version == 3

    with pytest.raises(ValueError):
        await repo.update_enrollment(enrollment.id, 3, workflow_id="other")


@pytest.mark.asyncio
async def test_list_due_respects_schedule_and_status(repo):
    wf = _workflow()
    await repo.create_workflow(wf, _steps())
    due = _enrollment(wf.id, "due", NOW - timedelta(hours=1))
    later = _enrollment(wf.id, "later", NOW + timedelta(days=1))
    done = _enrollment(wf.id, "done", NOW - timedelta(days=1))
    for e in (due, later, done):
        await repo.enroll_if_absent(e)
    await repo.update_enrollment(done.id, 1, status=EnrollmentStatus.COMPLETED, completed_at=NOW)

    assert [e.lead_id for e in await repo.list_due(NOW, 10)] == ["due"]
    assert [e.lead_id for e in await repo.list_due(NOW + timedelta(days=2), 1)] == ["due"]


@pytest.mark.asyncio
async def test_list_due_can_leave_out_paused_workflows(repo):
    paused = _workflow()
    live = _workflow(is_active=True)
    for wf in (paused, live):
        await repo.create_workflow(wf, _steps())
    await repo.enroll_if_absent(_enrollment(paused.id, "paused-1", NOW - timedelta(hours=3)))
    await repo.enroll_if_absent(_enrollment(paused.id, "paused-2", NOW - timedelta(hours=2)))
    await repo.enroll_if_absent(_enrollment(live.id, "live", NOW - timedelta(hours=1)))

    assert [e.lead_id for e in await repo.list_due(NOW, 2)] == ["paused-1", "paused-2"]
    only_active = await repo.list_due(NOW, 2, active_workflows_only=True)
    assert [e.lead_id for e in only_active] == ["live"]


@pytest.mark.asyncio
async def test_cancellation_by_lead_and_by_workflow_delete(repo):
    wf1, wf2 = _workflow(), _workflow()
    await repo.create_workflow(wf1, _steps())
    await repo.create_workflow(wf2, _steps())
    a = _enrollment(wf1.id, "lead-a")
    b = _enrollment(wf2.id, "lead-a")
    c = _enrollment(wf1.id, "lead-c")
    for e in (a, b, c):
        await repo.enroll_if_absent(e)

    cancelled = await repo.cancel_enrollments(NOW, lead_id="lead-a", reason="lead deleted")
    assert set(cancelled) == {a.id, b.id}
    stored = await repo.get_enrollment(a.id)
    assert stored.status == EnrollmentStatus.CANCELLED
    assert stored.cancelled_at == NOW
    assert stored.last_error == "lead deleted"

    assert await repo.delete_workflow(wf1.id, NOW) == [c.id]
    assert (await repo.get_enrollment(c.id)).status == EnrollmentStatus.CANCELLED

    stats = await repo.workflow_stats(wf1.id)
    assert (stats.active, stats.completed, stats.cancelled) == (0, 0, 2)
    assert stats.total == 2


@pytest.mark.asyncio
async def test_replace_steps_is_all_or_nothing(repo):
    wf = _workflow()
    await repo.create_workflow(wf, _steps(2))

    await repo.replace_steps(wf.id, [Step(order=1, action=Wait(), delay_days=4)])
    steps = await repo.get_steps(wf.id)
    assert [(s.order, s.action_type) for s in steps] == [(1, "wait")]

    broken = [
        Step(order=1, action=SendEmail(email_type="new")),
        Step(order=1, action=SendEmail(email_type="clash")),
    ]
    with pytest.raises((ValueError, sqlite3.IntegrityError)):
        await repo.replace_steps(wf.id, broken)
    steps = await repo.get_steps(wf.id)
    assert [(s.order, s.action_type, s.delay_days) for s in steps] == [(1, "wait", 4)]

    with pytest.raises(WorkflowNotFound):
        await repo.replace_steps("missing", [])


@pytest.mark.asyncio
async def test_event_log(repo):
    wf = _workflow()
    await repo.create_workflow(wf, _steps())
    enrollment = _enrollment(wf.id)
    await repo.enroll_if_absent(enrollment)

    await repo.record_event(EnrollmentEvent(enrollment_id=enrollment.id, kind="enrolled", occurred_at=NOW))
    await repo.record_event(
        EnrollmentEvent(
            enrollment_id=enrollment.id,
            kind="step_failed",
            step_order=1,
            message="timeout",
            details={"attempt": 1},
            occurred_at=NOW,
        )
    )
    events = await repo.list_events(enrollment.id)
    assert [e.kind for e in events] == ["enrolled", "step_failed"]
    assert events[1].details == {"attempt": 1}
    assert events[1].occurred_at == NOW
    assert await repo.list_events("other") == []


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    wf = _workflow()
    await repo.create_workflow(wf, _steps())
    enrollment = _enrollment(wf.id)
    await repo.enroll_if_absent(enrollment)

    reopened = SQLiteWorkflowRepository(path)
    stored = await reopened.get_enrollment(enrollment.id)
    assert stored is not None
    assert stored.next_action_at == NOW
    assert not await reopened.enroll_if_absent(_enrollment(wf.id))
