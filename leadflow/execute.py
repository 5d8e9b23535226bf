"""Step execution for due enrollments."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .collaborators.delivery import EmailSender
from .collaborators.drafting import EmailDrafter
from .collaborators.leads import LeadStore
from .config import EngineConfig
from .constants import DEFAULT_NO_RESPONSE_DAYS, LEAD_EVENTS_TOPIC
from .contracts import (
    Condition,
    ConditionType,
    Enrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    Lead,
    SendEmail,
    SetStatus,
    StatusChanged,
    Step,
    Wait,
    WorkflowDefinition,
    utcnow,
)
from .errors import SenderNotConfigured, StepFailed, TerminalStepError, TransientStepError
from .events import BaseEventBus
from .persistence import WorkflowRepository
from .tasks import TaskRegistry, TaskState
from .utils.retry import retry_at

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    ERRORED = "errored"


class PassSummary(BaseModel):
    """Result of one executor pass keyed by enrollment id."""

    outcomes: Dict[str, StepOutcome] = Field(default_factory=dict)

    def count(self, outcome: StepOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)


def _since_last_contact(at: Optional[datetime], lead: Lead) -> bool:
    if at is None:
        return False
    return lead.last_contacted_at is None or at >= lead.last_contacted_at


def evaluate_condition(condition: Condition, lead: Lead, now: datetime) -> bool:
    """Evaluate an engagement predicate against the lead's current state.

    Engagement signals count only when they happened at or after the last
    email sent to the lead.
    """

    kind = condition.condition_type
    if kind == ConditionType.EMAIL_OPENED:
        return _since_last_contact(lead.email_opened_at, lead)
    if kind == ConditionType.EMAIL_CLICKED:
        return _since_last_contact(lead.email_clicked_at, lead)
    if kind == ConditionType.REPLY_RECEIVED:
        return _since_last_contact(lead.email_replied_at, lead)
    if kind == ConditionType.NO_RESPONSE:
        try:
            days = int(condition.condition_value or DEFAULT_NO_RESPONSE_DAYS)
        except ValueError as e:
            raise TerminalStepError(
                f"Invalid no_response window: {condition.condition_value!r}"
            ) from e
        cutoff = now - timedelta(days=days)
        return lead.last_interaction_at is None or lead.last_interaction_at < cutoff
    if kind == ConditionType.STATUS_EQUALS:
        return lead.contact_status == condition.condition_value
    raise TerminalStepError(f"Unsupported condition: {kind}")


class StepExecutor:
    """Advance due enrollments one step per pass.

    A pass is safe to run concurrently with other passes, in this process or
    elsewhere: an enrollment is claimed with a compare-and-swap on its version
    before any side effect, and only the claim holder may advance it.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        leads: LeadStore,
        drafter: EmailDrafter,
        sender: EmailSender,
        events: Optional[BaseEventBus] = None,
        config: Optional[EngineConfig] = None,
        tasks: Optional[TaskRegistry] = None,
        topic: str = LEAD_EVENTS_TOPIC,
    ) -> None:
        self._repository = repository
        self._leads = leads
        self._drafter = drafter
        self._sender = sender
        self._events = events
        self.config = config or EngineConfig()
        self.tasks = tasks if tasks is not None else TaskRegistry()
        self._topic = topic

    async def run_due(self, now: Optional[datetime] = None) -> PassSummary:
        """Execute one step for every enrollment due at ``now``."""

        now = now or utcnow()
        due = await self._repository.list_due(
            now,
            self.config.batch_size,
            active_workflows_only=self.config.pause_mode == "freeze_all",
        )
        summary = PassSummary()
        workflows: Dict[str, Optional[WorkflowDefinition]] = {}
        for enrollment in due:
            if enrollment.workflow_id not in workflows:
                workflows[enrollment.workflow_id] = await self._repository.get_workflow(
                    enrollment.workflow_id
                )
            try:
                outcome = await self.execute_enrollment(
                    enrollment, now, workflows[enrollment.workflow_id]
                )
            except Exception as e:
                # The lease stays in place, so the enrollment is retried once it expires
                logger.exception(f"Unexpected error executing enrollment {enrollment.id}: {e}")
                await self._record(
                    enrollment,
                    "step_failed",
                    enrollment.current_step_order,
                    f"{type(e).__name__}: {e}",
                    now,
                    {"retryable": True, "unexpected": True},
                )
                outcome = StepOutcome.ERRORED
            summary.outcomes[enrollment.id] = outcome
        if due:
            logger.info(
                f"Executor pass at {now.isoformat()}: {len(due)} due, "
                f"{summary.count(StepOutcome.ADVANCED)} advanced, "
                f"{summary.count(StepOutcome.COMPLETED)} completed, "
                f"{summary.count(StepOutcome.ERRORED)} errored"
            )
        return summary

    async def execute_enrollment(
        self,
        enrollment: Enrollment,
        now: datetime,
        workflow: Optional[WorkflowDefinition] = None,
    ) -> StepOutcome:
        workflow = workflow or await self._repository.get_workflow(enrollment.workflow_id)
        if workflow is None:
            return await self._cancel(enrollment, now, "workflow deleted", None)
        if self.config.pause_mode == "freeze_all" and not workflow.is_active:
            return StepOutcome.SKIPPED

        if not self.tasks.begin(enrollment.id):
            return StepOutcome.SKIPPED
        try:
            claimed = await self._repository.claim_enrollment(
                enrollment.id,
                enrollment.version,
                uuid.uuid4().hex,
                now + timedelta(seconds=self.config.lease_seconds),
                now,
            )
            if claimed is None:
                logger.warning(f"Enrollment {enrollment.id} claimed by another pass")
                self.tasks.end(enrollment.id, TaskState.SUCCEEDED)
                return StepOutcome.SKIPPED
            outcome = await self._run_claimed(workflow, claimed, now)
        except Exception:
            self.tasks.end(enrollment.id, TaskState.FAILED)
            raise
        failed = outcome in (StepOutcome.RETRYING, StepOutcome.CANCELLED)
        self.tasks.end(enrollment.id, TaskState.FAILED if failed else TaskState.SUCCEEDED)
        return outcome

    async def _run_claimed(
        self, workflow: WorkflowDefinition, enrollment: Enrollment, now: datetime
    ) -> StepOutcome:
        steps = {s.order: s for s in await self._repository.get_steps(workflow.id)}
        step = steps.get(enrollment.current_step_order)
        if step is None:
            return await self._complete(enrollment, enrollment.current_step_order, now)

        try:
            next_order = await self._perform(workflow, enrollment, step, now)
        except StepFailed as e:
            return await self._fail(enrollment, step, e, now)

        await self._record(enrollment, "step_executed", step.order, step.action_type, now)
        next_step = steps.get(next_order)
        if next_step is None:
            return await self._complete(enrollment, next_order, now)

        updated = await self._repository.update_enrollment(
            enrollment.id,
            enrollment.version,
            current_step_order=next_order,
            next_action_at=now + timedelta(days=next_step.delay_days),
            attempts=0,
            last_error=None,
            lease_token=None,
            lease_until=None,
        )
        if updated is None:
            logger.warning(f"Enrollment {enrollment.id} changed while executing step {step.order}")
            return StepOutcome.SKIPPED
        logger.info(
            f"Enrollment {enrollment.id} executed step {step.order} ({step.action_type}), "
            f"next step {next_order} at {updated.next_action_at.isoformat()}"
        )
        return StepOutcome.ADVANCED

    async def _perform(
        self, workflow: WorkflowDefinition, enrollment: Enrollment, step: Step, now: datetime
    ) -> int:
        """Run the step's side effect and return the order of the next step."""

        action = step.action
        if isinstance(action, Wait):
            return step.order + 1

        lead = await self._load_lead(enrollment)
        if isinstance(action, SendEmail):
            await self._send_email(workflow, enrollment, lead, action, step, now)
            return step.order + 1
        if isinstance(action, SetStatus):
            await self._set_status(workflow, enrollment, lead, action, step, now)
            return step.order + 1
        if isinstance(action, Condition):
            result = evaluate_condition(action, lead, now)
            target = action.on_true if result else action.on_false
            await self._record(
                enrollment,
                "condition_evaluated",
                step.order,
                f"{action.condition_type.value} is {result}",
                now,
                {"result": result, "next_step": target or step.order + 1},
            )
            return target or step.order + 1
        raise TerminalStepError(f"Unsupported step action: {step.action_type}")

    async def _load_lead(self, enrollment: Enrollment) -> Lead:
        try:
            lead = await self._leads.get_lead(enrollment.lead_id)
        except httpx.HTTPError as e:
            raise TransientStepError(f"Lead store unavailable: {e}") from e
        if lead is None:
            raise TerminalStepError(f"Lead {enrollment.lead_id} no longer exists")
        return lead

    async def _send_email(
        self,
        workflow: WorkflowDefinition,
        enrollment: Enrollment,
        lead: Lead,
        action: SendEmail,
        step: Step,
        now: datetime,
    ) -> None:
        if not lead.email:
            raise TerminalStepError(f"Lead {lead.id} has no email address")
        draft = await self._drafter.draft(lead, action, workflow.name)
        try:
            await self._sender.send(enrollment.owner, lead, draft)
        except SenderNotConfigured as e:
            raise TerminalStepError(str(e)) from e

        await self._record(
            enrollment, "email_sent", step.order, draft.subject, now, {"to": lead.email}
        )
        try:
            await self._leads.record_email_sent(lead.id, now)
        except (httpx.HTTPError, KeyError) as e:
            # The email is out; retrying the step would send it twice.
            logger.warning(f"Could not record send for lead {lead.id}: {e}")

    async def _set_status(
        self,
        workflow: WorkflowDefinition,
        enrollment: Enrollment,
        lead: Lead,
        action: SetStatus,
        step: Step,
        now: datetime,
    ) -> None:
        """Write the new status and announce the change on the lead events topic.

        The change is recorded on the enrollment before it is published, so a
        retry after a failed publish still announces it even though the lead
        already carries the new status.
        """

        try:
            old_status = await self._leads.update_status(lead.id, action.next_status)
        except httpx.HTTPError as e:
            raise TransientStepError(f"Lead store unavailable: {e}") from e
        except KeyError as e:
            raise TerminalStepError(f"Lead {lead.id} no longer exists") from e

        if old_status != action.next_status:
            await self._record(
                enrollment,
                "status_set",
                step.order,
                f"{old_status} -> {action.next_status}",
                now,
                {"old_status": old_status, "new_status": action.next_status},
            )
        elif enrollment.attempts > 0:
            old_status = await self._unpublished_change(enrollment, step, action.next_status)
        if old_status == action.next_status or self._events is None:
            return
        try:
            await self._events.publish(
                self._topic,
                StatusChanged(
                    lead_id=lead.id,
                    owner=lead.owner,
                    old_status=old_status,
                    new_status=action.next_status,
                    source_workflow_id=workflow.id,
                    occurred_at=now,
                ),
            )
        except Exception as e:
            raise TransientStepError(f"Could not publish status change: {e}") from e

    async def _unpublished_change(
        self, enrollment: Enrollment, step: Step, new_status: str
    ) -> Optional[str]:
        """Old status of a change an earlier attempt of this step wrote but never announced."""

        for event in reversed(await self._repository.list_events(enrollment.id)):
            if event.kind == "status_set" and event.step_order == step.order:
                if event.details.get("new_status") == new_status:
                    return event.details.get("old_status")
        return new_status

    async def _fail(
        self, enrollment: Enrollment, step: Step, error: StepFailed, now: datetime
    ) -> StepOutcome:
        attempts = enrollment.attempts + 1
        await self._record(
            enrollment,
            "step_failed",
            step.order,
            str(error),
            now,
            {"retryable": error.retryable, "attempt": attempts},
        )
        retry = self.config.retry
        if not error.retryable or attempts >= retry.max_attempts:
            logger.error(
                f"Enrollment {enrollment.id} failed at step {step.order} "
                f"after {attempts} attempt(s): {error}"
            )
            return await self._cancel(enrollment, now, str(error), attempts)

        updated = await self._repository.update_enrollment(
            enrollment.id,
            enrollment.version,
            attempts=attempts,
            last_error=str(error),
            lease_token=None,
            lease_until=retry_at(now, attempts, retry.backoff_base, retry.jitter),
        )
        if updated is None:
            logger.warning(f"Enrollment {enrollment.id} changed while failing step {step.order}")
            return StepOutcome.SKIPPED
        logger.warning(
            f"Enrollment {enrollment.id} step {step.order} failed (attempt {attempts}), "
            f"retrying after {updated.lease_until.isoformat()}: {error}"
        )
        return StepOutcome.RETRYING

    async def _complete(
        self, enrollment: Enrollment, cursor: int, now: datetime
    ) -> StepOutcome:
        updated = await self._repository.update_enrollment(
            enrollment.id,
            enrollment.version,
            status=EnrollmentStatus.COMPLETED,
            completed_at=now,
            current_step_order=max(cursor, enrollment.current_step_order),
            attempts=0,
            last_error=None,
            lease_token=None,
            lease_until=None,
        )
        if updated is None:
            logger.warning(f"Enrollment {enrollment.id} changed before completion")
            return StepOutcome.SKIPPED
        await self._record(enrollment, "completed", None, None, now)
        logger.info(f"Enrollment {enrollment.id} completed")
        return StepOutcome.COMPLETED

    async def _cancel(
        self,
        enrollment: Enrollment,
        now: datetime,
        reason: str,
        attempts: Optional[int],
    ) -> StepOutcome:
        changes = {
            "status": EnrollmentStatus.CANCELLED,
            "cancelled_at": now,
            "last_error": reason,
            "lease_token": None,
            "lease_until": None,
        }
        if attempts is not None:
            changes["attempts"] = attempts
        updated = await self._repository.update_enrollment(
            enrollment.id, enrollment.version, **changes
        )
        if updated is None:
            return StepOutcome.SKIPPED
        await self._record(enrollment, "cancelled", enrollment.current_step_order, reason, now)
        return StepOutcome.CANCELLED

    async def _record(
        self,
        enrollment: Enrollment,
        kind: str,
        step_order: Optional[int],
        message: Optional[str],
        now: datetime,
        details: Optional[dict] = None,
    ) -> None:
        await self._repository.record_event(
            EnrollmentEvent(
                enrollment_id=enrollment.id,
                kind=kind,
                step_order=step_order,
                message=message,
                details=details or {},
                occurred_at=now,
            )
        )

    def in_flight(self) -> List[str]:
        return self.tasks.running()
