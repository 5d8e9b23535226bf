"""Repository abstraction for workflow definitions and the enrollment ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from ..contracts import (
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    Step,
    WorkflowDefinition,
)
from .models import WorkflowStats

# Enrollment fields that may change after insert. Everything else is fixed at
# enrollment time.
MUTABLE_ENROLLMENT_FIELDS = frozenset(
    {
        "current_step_order",
        "next_action_at",
        "status",
        "completed_at",
        "cancelled_at",
        "attempts",
        "last_error",
        "lease_token",
        "lease_until",
    }
)


def check_enrollment_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_ENROLLMENT_FIELDS
    if unknown:
        raise ValueError(f"Cannot update enrollment fields: {sorted(unknown)}")


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Every enrollment mutation is compare-and-swap on ``version``: callers pass
    the version they read and get ``None`` back when another writer got there
    first.
    """

    # -- workflows ------------------------------------------------------
    async def create_workflow(
        self, workflow: WorkflowDefinition, steps: Optional[list[Step]] = None
    ) -> None:
        """Persist a new workflow, optionally with its initial steps."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self, owner: Optional[str] = None, active: Optional[bool] = None
    ) -> list[WorkflowDefinition]:
        """Return workflows, optionally filtered by owner and active flag."""

    async def update_workflow(self, workflow: WorkflowDefinition) -> None:
        """Persist name, description, trigger and ``updated_at``."""

    async def set_workflow_active(
        self, workflow_id: str, is_active: bool, now: datetime
    ) -> None:
        """Flip the active flag."""

    async def delete_workflow(self, workflow_id: str, now: datetime) -> list[str]:
        """Delete a workflow and its steps; cancel its active enrollments.

        Returns the ids of the cancelled enrollments.
        """

    # -- steps ----------------------------------------------------------
    async def get_steps(self, workflow_id: str) -> list[Step]:
        """Return steps ordered by ``order``."""

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        """Atomically replace the full step set of a workflow."""

    # -- enrollments ----------------------------------------------------
    async def enroll_if_absent(self, enrollment: Enrollment) -> bool:
        """Insert unless the lead already holds an active enrollment."""

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment by id."""

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        """Return enrollments matching the filters, oldest first."""

    async def lead_ids_with_status(
        self, workflow_id: str, statuses: Iterable[EnrollmentStatus]
    ) -> set[str]:
        """Lead ids holding an enrollment in ``workflow_id`` with one of ``statuses``."""

    async def list_due(
        self, now: datetime, limit: int, active_workflows_only: bool = False
    ) -> list[Enrollment]:
        """Active, unleased enrollments with ``next_action_at <= now``.

        With ``active_workflows_only`` enrollments of paused workflows are left
        out, so they never take up room in a batch.
        """

    async def claim_enrollment(
        self,
        enrollment_id: str,
        expected_version: int,
        lease_token: str,
        lease_until: datetime,
        now: datetime,
    ) -> Enrollment | None:
        """Take the execution lease if the enrollment is still due and unchanged."""

    async def update_enrollment(
        self, enrollment_id: str, expected_version: int, **changes: Any
    ) -> Enrollment | None:
        """Apply ``changes`` if the stored version equals ``expected_version``."""

    async def cancel_enrollments(
        self,
        now: datetime,
        workflow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> list[str]:
        """Cancel active enrollments of a workflow and/or a lead."""

    async def workflow_stats(self, workflow_id: str) -> WorkflowStats:
        """Enrollment counts by status."""

    # -- event log ------------------------------------------------------
    async def record_event(self, event: EnrollmentEvent) -> None:
        """Append to the per-enrollment event log."""

    async def list_events(self, enrollment_id: str) -> list[EnrollmentEvent]:
        """Return the event log of one enrollment in insertion order."""
