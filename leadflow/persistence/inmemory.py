"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..contracts import (
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    Step,
    WorkflowDefinition,
)
from ..errors import WorkflowNotFound
from .models import WorkflowStats
from .repository import WorkflowRepository, check_enrollment_changes


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflows and enrollments in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._steps: Dict[str, List[Step]] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._events: List[EnrollmentEvent] = []
        self._event_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_workflow(
        self, workflow: WorkflowDefinition, steps: Optional[list[Step]] = None
    ) -> None:
        async with self._lock:
            if workflow.id in self._workflows:
                raise ValueError(f"Workflow {workflow.id} already exists")
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
            self._steps[workflow.id] = [s.model_copy(deep=True) for s in steps or []]

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, owner: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowDefinition]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (owner is None or wf.owner == owner)
            and (active is None or wf.is_active == active)
        ]

    async def update_workflow(self, workflow: WorkflowDefinition) -> None:
        async with self._lock:
            stored = self._workflows.get(workflow.id)
            if stored is None:
                raise WorkflowNotFound(workflow.id)
            self._workflows[workflow.id] = stored.model_copy(
                update={
                    "name": workflow.name,
                    "description": workflow.description,
                    "trigger": workflow.trigger,
                    "updated_at": workflow.updated_at,
                }
            )

    async def set_workflow_active(
        self, workflow_id: str, is_active: bool, now: datetime
    ) -> None:
        async with self._lock:
            stored = self._workflows.get(workflow_id)
            if stored is None:
                raise WorkflowNotFound(workflow_id)
            stored.is_active = is_active
            stored.updated_at = now

    async def delete_workflow(self, workflow_id: str, now: datetime) -> list[str]:
        async with self._lock:
            if workflow_id not in self._workflows:
                raise WorkflowNotFound(workflow_id)
            cancelled = self._cancel_unlocked(now, workflow_id=workflow_id, reason="workflow deleted")
            del self._workflows[workflow_id]
            self._steps.pop(workflow_id, None)
            return cancelled

    # ------------------------------------------------------------------
    async def get_steps(self, workflow_id: str) -> list[Step]:
        steps = self._steps.get(workflow_id, [])
        return [s.model_copy(deep=True) for s in sorted(steps, key=lambda s: s.order)]

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        replacement = [s.model_copy(deep=True) for s in steps]
        async with self._lock:
            if workflow_id not in self._workflows:
                raise WorkflowNotFound(workflow_id)
            orders = [s.order for s in replacement]
            if len(set(orders)) != len(orders):
                raise ValueError(f"Duplicate step orders for workflow {workflow_id}")
            self._steps[workflow_id] = replacement

    # ------------------------------------------------------------------
    async def enroll_if_absent(self, enrollment: Enrollment) -> bool:
        async with self._lock:
            for existing in self._enrollments.values():
                if (
                    existing.workflow_id == enrollment.workflow_id
                    and existing.lead_id == enrollment.lead_id
                    and existing.status == EnrollmentStatus.ACTIVE
                ):
                    return False
            if enrollment.id in self._enrollments:
                return False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        found = [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (lead_id is None or e.lead_id == lead_id)
            and (status is None or e.status == status)
        ]
        return sorted(found, key=lambda e: e.enrolled_at)

    async def lead_ids_with_status(
        self, workflow_id: str, statuses: Iterable[EnrollmentStatus]
    ) -> set[str]:
        wanted = set(statuses)
        return {
            e.lead_id
            for e in self._enrollments.values()
            if e.workflow_id == workflow_id and e.status in wanted
        }

    async def list_due(
        self, now: datetime, limit: int, active_workflows_only: bool = False
    ) -> list[Enrollment]:
        due = [e for e in self._enrollments.values() if e.is_due(now)]
        if active_workflows_only:
            active = {w.id for w in self._workflows.values() if w.is_active}
            due = [e for e in due if e.workflow_id in active]
        due.sort(key=lambda e: e.next_action_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def claim_enrollment(
        self,
        enrollment_id: str,
        expected_version: int,
        lease_token: str,
        lease_until: datetime,
        now: datetime,
    ) -> Enrollment | None:
        async with self._lock:
            stored = self._enrollments.get(enrollment_id)
            if stored is None or stored.version != expected_version or not stored.is_due(now):
                return None
            stored.lease_token = lease_token
            stored.lease_until = lease_until
            stored.version += 1
            return stored.model_copy(deep=True)

    async def update_enrollment(
        self, enrollment_id: str, expected_version: int, **changes: Any
    ) -> Enrollment | None:
        check_enrollment_changes(changes)
        async with self._lock:
            stored = self._enrollments.get(enrollment_id)
            if stored is None or stored.version != expected_version:
                return None
            updated = stored.model_copy(update={**changes, "version": stored.version + 1})
            self._enrollments[enrollment_id] = Enrollment.model_validate(updated.model_dump())
            return self._enrollments[enrollment_id].model_copy(deep=True)

    async def cancel_enrollments(
        self,
        now: datetime,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> list[str]:
        async with self._lock:
            return self._cancel_unlocked(now, workflow_id=workflow_id, lead_id=lead_id, reason=reason)

    def _cancel_unlocked(
        self,
        now: datetime,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> list[str]:
        if workflow_id is None and lead_id is None:
            raise ValueError("workflow_id or lead_id is required")
        cancelled = []
        for enrollment in self._enrollments.values():
            if enrollment.status != EnrollmentStatus.ACTIVE:
                continue
            if workflow_id is not None and enrollment.workflow_id != workflow_id:
                continue
            if lead_id is not None and enrollment.lead_id != lead_id:
                continue
            enrollment.status = EnrollmentStatus.CANCELLED
            enrollment.cancelled_at = now
            enrollment.last_error = reason or enrollment.last_error
            enrollment.lease_token = None
            enrollment.lease_until = None
            enrollment.version += 1
            cancelled.append(enrollment.id)
        return cancelled

    async def workflow_stats(self, workflow_id: str) -> WorkflowStats:
        stats = WorkflowStats(workflow_id=workflow_id)
        for enrollment in self._enrollments.values():
            if enrollment.workflow_id != workflow_id:
                continue
            current = getattr(stats, enrollment.status.value)
            setattr(stats, enrollment.status.value, current + 1)
        return stats

    # ------------------------------------------------------------------
    async def record_event(self, event: EnrollmentEvent) -> None:
        async with self._lock:
            self._event_id += 1
            self._events.append(event.model_copy(update={"id": self._event_id}, deep=True))

    async def list_events(self, enrollment_id: str) -> list[EnrollmentEvent]:
        return [
            e.model_copy(deep=True) for e in self._events if e.enrollment_id == enrollment_id
        ]
