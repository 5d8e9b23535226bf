"""Enrollment of leads into workflows.

Every path that creates an enrollment (activation, periodic sweep, status
change events, manual enrollment) ends in the repository's
``enroll_if_absent`` so a lead never holds two active enrollments in the same
workflow, however the passes interleave.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .collaborators.leads import LeadStore
from .contracts import (
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    InactivityTrigger,
    LeadDeleted,
    Step,
    StatusChanged,
    StatusEqualsTrigger,
    WorkflowDefinition,
    utcnow,
)
from .errors import (
    ConfigurationError,
    DuplicateEnrollment,
    LeadNotFound,
    TriggerEvaluationError,
    WorkflowNotFound,
)
from .persistence import WorkflowRepository
from .steps import validate_steps
from .triggers import matches_status_change, select_initial_enrollees

logger = logging.getLogger(__name__)

# Leads that already went through a workflow are not picked up again by
# automatic triggers.
_AUTO_EXCLUDED = (EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED)


class Enroller:
    """Create enrollments from triggers and operator requests."""

    def __init__(self, repository: WorkflowRepository, leads: LeadStore) -> None:
        self._repository = repository
        self._leads = leads

    async def _load(self, workflow_id: str) -> tuple[WorkflowDefinition, List[Step]]:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        steps = await self._repository.get_steps(workflow_id)
        return workflow, steps

    async def _enroll(
        self,
        workflow: WorkflowDefinition,
        steps: List[Step],
        lead_ids: Iterable[str],
        now: datetime,
        trigger_type: str,
    ) -> List[Enrollment]:
        first_delay = timedelta(days=steps[0].delay_days)
        created: List[Enrollment] = []
        for lead_id in lead_ids:
            enrollment = Enrollment(
                workflow_id=workflow.id,
                lead_id=lead_id,
                owner=workflow.owner,
                current_step_order=1,
                next_action_at=now + first_delay,
                enrolled_at=now,
                trigger_type=trigger_type,
            )
            if not await self._repository.enroll_if_absent(enrollment):
                logger.debug(f"Lead {lead_id} already enrolled in workflow {workflow.id}")
                continue
            await self._repository.record_event(
                EnrollmentEvent(
                    enrollment_id=enrollment.id,
                    kind="enrolled",
                    step_order=1,
                    message=f"Enrolled via {trigger_type}",
                    occurred_at=now,
                )
            )
            logger.info(f"Enrolled lead {lead_id} in workflow {workflow.id} ({trigger_type})")
            created.append(enrollment)
        return created

    async def activate_workflow(
        self, workflow_id: str, now: Optional[datetime] = None
    ) -> List[Enrollment]:
        """Activate a workflow and enroll the leads its trigger selects.

        The lead population is read before anything is written, so a failing
        lead store leaves the workflow paused and unenrolled.
        """

        now = now or utcnow()
        workflow, steps = await self._load(workflow_id)
        if not steps:
            raise ConfigurationError(f"Workflow {workflow_id} has no steps")
        validate_steps(steps)

        try:
            leads = await self._leads.list_leads(workflow.owner)
        except Exception as e:
            raise TriggerEvaluationError(
                f"Could not load leads for workflow {workflow_id}: {e}"
            ) from e

        await self._repository.set_workflow_active(workflow_id, True, now)
        logger.info(f"Workflow {workflow_id} activated")

        exclude = await self._repository.lead_ids_with_status(
            workflow_id, [EnrollmentStatus.ACTIVE]
        )
        selected = select_initial_enrollees(workflow.trigger, leads, now, exclude)
        return await self._enroll(workflow, steps, selected, now, workflow.trigger.type)

    async def pause_workflow(self, workflow_id: str, now: Optional[datetime] = None) -> None:
        """Stop new enrollment. In-flight enrollments are left as they are."""

        now = now or utcnow()
        await self._repository.set_workflow_active(workflow_id, False, now)
        logger.info(f"Workflow {workflow_id} paused")

    async def enroll_lead(
        self, workflow_id: str, lead_id: str, now: Optional[datetime] = None
    ) -> Enrollment:
        """Explicit operator enrollment; raises ``DuplicateEnrollment`` if active."""

        now = now or utcnow()
        workflow, steps = await self._load(workflow_id)
        if not workflow.is_active:
            raise ConfigurationError(f"Workflow {workflow_id} is paused")
        if not steps:
            raise ConfigurationError(f"Workflow {workflow_id} has no steps")
        lead = await self._leads.get_lead(lead_id)
        if lead is None or lead.owner != workflow.owner:
            raise LeadNotFound(lead_id)

        created = await self._enroll(workflow, steps, [lead_id], now, "manual")
        if not created:
            raise DuplicateEnrollment(workflow_id, lead_id)
        return created[0]

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Re-evaluate population triggers of every active workflow.

        Returns the number of new enrollments per workflow id. A workflow
        whose lead population cannot be read is skipped for this pass.
        """

        now = now or utcnow()
        counts: Dict[str, int] = {}
        for workflow in await self._repository.list_workflows(active=True):
            if not isinstance(workflow.trigger, (StatusEqualsTrigger, InactivityTrigger)):
                continue
            steps = await self._repository.get_steps(workflow.id)
            if not steps:
                continue
            try:
                leads = await self._leads.list_leads(workflow.owner)
            except Exception as e:
                logger.error(f"Sweep skipped workflow {workflow.id}: {e}")
                continue
            exclude = await self._repository.lead_ids_with_status(workflow.id, _AUTO_EXCLUDED)
            selected = select_initial_enrollees(workflow.trigger, leads, now, exclude)
            created = await self._enroll(workflow, steps, selected, now, workflow.trigger.type)
            counts[workflow.id] = len(created)
        return counts

    async def on_status_changed(
        self, event: StatusChanged, now: Optional[datetime] = None
    ) -> List[Enrollment]:
        """Enroll the lead in every active workflow listening for this transition."""

        now = now or utcnow()
        created: List[Enrollment] = []
        for workflow in await self._repository.list_workflows(owner=event.owner, active=True):
            if not matches_status_change(workflow.trigger, event):
                continue
            steps = await self._repository.get_steps(workflow.id)
            if not steps:
                continue
            excluded = await self._repository.lead_ids_with_status(workflow.id, _AUTO_EXCLUDED)
            if event.lead_id in excluded:
                continue
            created.extend(
                await self._enroll(workflow, steps, [event.lead_id], now, workflow.trigger.type)
            )
        return created

    async def on_lead_deleted(
        self, event: LeadDeleted, now: Optional[datetime] = None
    ) -> List[str]:
        return await self.cancel_lead(event.lead_id, now)

    async def cancel_lead(self, lead_id: str, now: Optional[datetime] = None) -> List[str]:
        """Cancel every active enrollment of a lead."""

        now = now or utcnow()
        cancelled = await self._repository.cancel_enrollments(
            now, lead_id=lead_id, reason="lead deleted"
        )
        for enrollment_id in cancelled:
            await self._repository.record_event(
                EnrollmentEvent(
                    enrollment_id=enrollment_id,
                    kind="cancelled",
                    message="lead deleted",
                    occurred_at=now,
                )
            )
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} enrollments of deleted lead {lead_id}")
        return cancelled
