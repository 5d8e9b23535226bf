"""Persistence-side models and row conversion helpers."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from ..contracts import (
    Enrollment,
    EnrollmentEvent,
    Step,
    WorkflowDefinition,
    step_action_adapter,
    trigger_adapter,
)


class WorkflowStats(BaseModel):
    """Enrollment counts for one workflow."""

    workflow_id: str
    active: int = 0
    completed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.active + self.completed + self.cancelled


ENROLLMENT_COLUMNS = (
    "id",
    "workflow_id",
    "lead_id",
    "owner",
    "current_step_order",
    "next_action_at",
    "status",
    "enrolled_at",
    "completed_at",
    "cancelled_at",
    "trigger_type",
    "attempts",
    "last_error",
    "lease_token",
    "lease_until",
    "version",
)

TIMESTAMP_FIELDS = frozenset(
    {"next_action_at", "enrolled_at", "completed_at", "cancelled_at", "lease_until"}
)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ts_to_text(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp so that text comparison matches time order."""
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds")


def text_to_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def load_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def dump_trigger(workflow: WorkflowDefinition) -> str:
    return json.dumps(trigger_adapter.dump_python(workflow.trigger, mode="json"))


def dump_action(step: Step) -> str:
    return json.dumps(step_action_adapter.dump_python(step.action, mode="json"))


def workflow_from_row(row: Mapping[str, Any], parse_ts: bool = True) -> WorkflowDefinition:
    convert = text_to_ts if parse_ts else (lambda v: v)
    return WorkflowDefinition(
        id=row["id"],
        owner=row["owner"],
        name=row["name"],
        description=row["description"],
        trigger=trigger_adapter.validate_python(load_json(row["trigger"])),
        is_active=bool(row["is_active"]),
        created_at=convert(row["created_at"]),
        updated_at=convert(row["updated_at"]),
    )


def step_from_row(row: Mapping[str, Any]) -> Step:
    return Step(
        order=row["step_order"],
        delay_days=row["delay_days"],
        action=step_action_adapter.validate_python(load_json(row["action"])),
    )


def enrollment_from_row(row: Mapping[str, Any], parse_ts: bool = True) -> Enrollment:
    data = {column: row[column] for column in ENROLLMENT_COLUMNS}
    if parse_ts:
        for field in TIMESTAMP_FIELDS:
            data[field] = text_to_ts(data[field])
    return Enrollment(**data)


def event_from_row(row: Mapping[str, Any], parse_ts: bool = True) -> EnrollmentEvent:
    return EnrollmentEvent(
        id=row["id"],
        enrollment_id=row["enrollment_id"],
        kind=row["kind"],
        step_order=row["step_order"],
        message=row["message"],
        details=load_json(row["details"]) or {},
        occurred_at=text_to_ts(row["occurred_at"]) if parse_ts else row["occurred_at"],
    )
