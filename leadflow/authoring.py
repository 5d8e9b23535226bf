"""Workflow definition authoring."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from .collaborators.drafting import EmailDrafter
from .collaborators.leads import LeadStore
from .contracts import (
    EmailDraft,
    EnrollmentEvent,
    SendEmail,
    Step,
    StepAction,
    Trigger,
    WorkflowDefinition,
    WorkflowPreview,
    utcnow,
)
from .errors import ConfigurationError, LeadNotFound, StepOrderError, WorkflowNotFound
from .persistence import WorkflowRepository, WorkflowStats
from .steps import (
    CanvasEdge,
    CanvasNode,
    build_timeline,
    insert_step,
    move_step,
    project_canvas,
    remove_step,
    validate_steps,
)
from .templates import get_template

logger = logging.getLogger(__name__)


class WorkflowAuthoring:
    """Create, edit and inspect workflow definitions.

    Step sets are always written whole through the repository's atomic
    replace, and only while the workflow is paused.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        leads: Optional[LeadStore] = None,
        drafter: Optional[EmailDrafter] = None,
    ) -> None:
        self._repository = repository
        self._leads = leads
        self._drafter = drafter

    async def _get(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def _require_paused(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._get(workflow_id)
        if workflow.is_active:
            raise ConfigurationError(
                f"Workflow {workflow_id} is active; pause it before editing"
            )
        return workflow

    # -- workflows ------------------------------------------------------
    async def create_workflow(
        self,
        owner: str,
        name: str,
        description: Optional[str] = None,
        trigger: Optional[Trigger] = None,
        steps: Optional[Sequence[Step]] = None,
    ) -> WorkflowDefinition:
        steps = list(steps or [])
        validate_steps(steps)
        workflow = WorkflowDefinition(owner=owner, name=name, description=description)
        if trigger is not None:
            workflow.trigger = trigger
        await self._repository.create_workflow(workflow, steps)
        logger.info(f"Created workflow {workflow.id} ({name}) with {len(steps)} steps")
        return workflow

    async def update_workflow(
        self,
        workflow_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        trigger: Optional[Trigger] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowDefinition:
        """Rename or re-describe a workflow; changing the trigger requires a pause."""

        workflow = await self._get(workflow_id)
        if trigger is not None:
            workflow = await self._require_paused(workflow_id)
            workflow.trigger = trigger
        if name is not None:
            workflow.name = name
        if description is not None:
            workflow.description = description
        workflow.updated_at = now or utcnow()
        await self._repository.update_workflow(workflow)
        return workflow

    async def delete_workflow(
        self, workflow_id: str, now: Optional[datetime] = None
    ) -> List[str]:
        """Delete a workflow and cancel its active enrollments."""

        now = now or utcnow()
        cancelled = await self._repository.delete_workflow(workflow_id, now)
        for enrollment_id in cancelled:
            await self._repository.record_event(
                EnrollmentEvent(
                    enrollment_id=enrollment_id,
                    kind="cancelled",
                    message="workflow deleted",
                    occurred_at=now,
                )
            )
        logger.info(f"Deleted workflow {workflow_id}, cancelled {len(cancelled)} enrollments")
        return cancelled

    async def list_workflows(
        self, owner: Optional[str] = None, active: Optional[bool] = None
    ) -> List[WorkflowDefinition]:
        return await self._repository.list_workflows(owner=owner, active=active)

    # -- steps ----------------------------------------------------------
    async def get_steps(self, workflow_id: str) -> List[Step]:
        await self._get(workflow_id)
        return await self._repository.get_steps(workflow_id)

    async def save_steps(self, workflow_id: str, steps: Sequence[Step]) -> List[Step]:
        """Replace the whole step set of a paused workflow."""

        await self._require_paused(workflow_id)
        steps = list(steps)
        validate_steps(steps)
        await self._repository.replace_steps(workflow_id, steps)
        logger.info(f"Saved {len(steps)} steps for workflow {workflow_id}")
        return steps

    async def add_step(
        self,
        workflow_id: str,
        action: StepAction,
        delay_days: int = 0,
        position: Optional[int] = None,
    ) -> List[Step]:
        current = await self.get_steps(workflow_id)
        return await self.save_steps(
            workflow_id, insert_step(current, action, delay_days, position)
        )

    async def remove_step(self, workflow_id: str, order: int) -> List[Step]:
        current = await self.get_steps(workflow_id)
        return await self.save_steps(workflow_id, remove_step(current, order))

    async def move_step(self, workflow_id: str, order: int, new_order: int) -> List[Step]:
        current = await self.get_steps(workflow_id)
        return await self.save_steps(workflow_id, move_step(current, order, new_order))

    async def save_canvas(
        self,
        workflow_id: str,
        nodes: Sequence[CanvasNode],
        edges: Sequence[CanvasEdge],
    ) -> List[Step]:
        """Project the visual builder graph and save it as the step set."""

        return await self.save_steps(workflow_id, project_canvas(nodes, edges))

    # -- inspection -----------------------------------------------------
    async def preview(
        self, workflow_id: str, sample_lead_id: Optional[str] = None
    ) -> WorkflowPreview:
        """Timeline of the straight-line path, optionally with a sample lead."""

        await self._get(workflow_id)
        timeline, total_days = build_timeline(await self._repository.get_steps(workflow_id))
        sample = None
        if sample_lead_id is not None:
            sample = await self._lead(sample_lead_id)
        return WorkflowPreview(
            workflow_id=workflow_id,
            timeline=timeline,
            total_days=total_days,
            sample_lead=sample,
        )

    async def preview_email(self, workflow_id: str, order: int, lead_id: str) -> EmailDraft:
        """Draft, without sending, the email a step would send to a lead."""

        if self._drafter is None:
            raise ConfigurationError("No email drafter configured")
        workflow = await self._get(workflow_id)
        steps = {s.order: s for s in await self._repository.get_steps(workflow_id)}
        step = steps.get(order)
        if step is None or not isinstance(step.action, SendEmail):
            raise StepOrderError(f"Step {order} of workflow {workflow_id} is not an email step")
        lead = await self._lead(lead_id)
        return await self._drafter.draft(lead, step.action, workflow.name)

    async def _lead(self, lead_id: str):
        if self._leads is None:
            raise ConfigurationError("No lead store configured")
        lead = await self._leads.get_lead(lead_id)
        if lead is None:
            raise LeadNotFound(lead_id)
        return lead

    async def stats(self, workflow_id: str) -> WorkflowStats:
        await self._get(workflow_id)
        return await self._repository.workflow_stats(workflow_id)

    # -- templates ------------------------------------------------------
    async def deploy_template(self, key: str, owner: str) -> WorkflowDefinition:
        """Create a paused workflow from a built-in template."""

        template = get_template(key)
        if template is None:
            raise ConfigurationError(f"Unknown template {key}")
        return await self.create_workflow(
            owner=owner,
            name=template.name,
            description=template.description,
            trigger=template.trigger,
            steps=template.steps,
        )
