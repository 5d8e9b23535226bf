"""Core data contracts for the leadflow workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ----------------------------------------------------------------------
# Triggers


class StatusEqualsTrigger(BaseModel):
    """Enroll every lead whose contact status equals ``status``."""

    type: Literal["status_equals"] = "status_equals"
    status: str


class StatusChangedToTrigger(BaseModel):
    """Enroll a lead when its status transitions into ``to``."""

    type: Literal["status_changed_to"] = "status_changed_to"
    to: str
    from_status: Optional[str] = None


class InactivityTrigger(BaseModel):
    """Enroll leads not contacted for more than ``days`` days."""

    type: Literal["inactivity"] = "inactivity"
    days: int = Field(default=14, ge=0)


class ManualTrigger(BaseModel):
    """Only explicit operator enrollment."""

    type: Literal["manual"] = "manual"


Trigger = Annotated[
    Union[StatusEqualsTrigger, StatusChangedToTrigger, InactivityTrigger, ManualTrigger],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Step actions


class ConditionType(str, Enum):
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    REPLY_RECEIVED = "reply_received"
    NO_RESPONSE = "no_response"
    STATUS_EQUALS = "status_equals"


class SendEmail(BaseModel):
    type: Literal["send_email"] = "send_email"
    email_type: str = "follow_up"
    tone: str = "professional"
    ai_hint: Optional[str] = None


class Wait(BaseModel):
    type: Literal["wait"] = "wait"


class Condition(BaseModel):
    """Branch on lead engagement.

    ``on_true`` / ``on_false`` name the successor step order for each
    outcome; ``None`` falls through to the next step.
    """

    type: Literal["condition"] = "condition"
    condition_type: ConditionType
    condition_value: Optional[str] = None
    on_true: Optional[int] = Field(default=None, ge=1)
    on_false: Optional[int] = Field(default=None, ge=1)


class SetStatus(BaseModel):
    type: Literal["set_status"] = "set_status"
    next_status: str


StepAction = Annotated[
    Union[SendEmail, Wait, Condition, SetStatus],
    Field(discriminator="type"),
]


class Step(BaseModel):
    """One unit of a workflow sequence.

    ``delay_days`` is the delay before this step runs, counted from the
    completion of the previous step.
    """

    order: int = Field(ge=1)
    action: StepAction
    delay_days: int = Field(default=0, ge=0)

    @property
    def action_type(self) -> str:
        return self.action.type


# ----------------------------------------------------------------------
# Workflows and enrollments


class WorkflowDefinition(BaseModel):
    """A named, ordered sequence of steps plus an enrollment trigger."""

    id: str = Field(default_factory=_new_id)
    owner: str
    name: str
    description: Optional[str] = None
    trigger: Trigger = Field(default_factory=ManualTrigger)
    is_active: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Enrollment(BaseModel):
    """Progress of one lead through one workflow."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    lead_id: str
    owner: str
    current_step_order: int = 1
    next_action_at: datetime
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    enrolled_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    trigger_type: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    lease_token: Optional[str] = None
    lease_until: Optional[datetime] = None
    version: int = 1

    def is_due(self, now: datetime) -> bool:
        if self.status != EnrollmentStatus.ACTIVE or self.next_action_at > now:
            return False
        return self.lease_until is None or self.lease_until <= now


class EnrollmentEvent(BaseModel):
    """Entry in the per-enrollment event log."""

    id: Optional[int] = None
    enrollment_id: str
    kind: str
    step_order: Optional[int] = None
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Leads and lead events


class Lead(BaseModel):
    """Snapshot of a lead as seen by the engine."""

    id: str
    owner: str
    email: Optional[str] = None
    business_name: Optional[str] = None
    niche: Optional[str] = None
    contact_status: str = "new"
    last_contacted_at: Optional[datetime] = None
    last_interaction_at: Optional[datetime] = None
    email_opened_at: Optional[datetime] = None
    email_clicked_at: Optional[datetime] = None
    email_replied_at: Optional[datetime] = None


class EmailDraft(BaseModel):
    subject: str = Field(description="Email subject line (max 60 chars)")
    body: str = Field(description="Plain-text email body")


class StatusChanged(BaseModel):
    type: Literal["status_changed"] = "status_changed"
    event_id: str = Field(default_factory=_new_id)
    lead_id: str
    owner: str
    old_status: Optional[str] = None
    new_status: str
    source_workflow_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @field_validator("new_status")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("new_status must not be blank")
        return value


class LeadDeleted(BaseModel):
    type: Literal["lead_deleted"] = "lead_deleted"
    event_id: str = Field(default_factory=_new_id)
    lead_id: str
    owner: str
    occurred_at: datetime = Field(default_factory=utcnow)


LeadEvent = Annotated[Union[StatusChanged, LeadDeleted], Field(discriminator="type")]

lead_event_adapter: TypeAdapter[Union[StatusChanged, LeadDeleted]] = TypeAdapter(LeadEvent)
trigger_adapter: TypeAdapter[Any] = TypeAdapter(Trigger)
step_action_adapter: TypeAdapter[Any] = TypeAdapter(StepAction)


class TimelineEntry(BaseModel):
    order: int
    day: int
    action_type: str
    description: str


class WorkflowPreview(BaseModel):
    workflow_id: str
    timeline: List[TimelineEntry] = Field(default_factory=list)
    total_days: int = 0
    sample_lead: Optional[Lead] = None
