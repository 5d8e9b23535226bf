"""Trigger evaluation.

Pure functions: callers supply the lead population and the set of leads that
must be skipped (already holding an active enrollment). Persistence of the
resulting enrollments lives in :mod:`leadflow.enroll`.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import AbstractSet, Iterable, List

from .constants import TERMINAL_LEAD_STATUSES
from .contracts import (
    InactivityTrigger,
    Lead,
    ManualTrigger,
    StatusChanged,
    StatusChangedToTrigger,
    StatusEqualsTrigger,
    Trigger,
)

logger = logging.getLogger(__name__)


def _utc_date(at: datetime) -> date:
    if at.tzinfo is None:
        return at.date()
    return at.astimezone(timezone.utc).date()


def is_inactive(lead: Lead, days: int, now: datetime) -> bool:
    """Return ``True`` when ``lead`` has been idle for more than ``days`` days.

    Idle time is counted in whole UTC calendar days, so the time of day of the
    last contact does not matter. Never-contacted leads are inactive. A lead
    last contacted ``days + 1`` calendar days ago is still on the boundary and
    not yet inactive.
    """

    if lead.contact_status in TERMINAL_LEAD_STATUSES:
        return False
    if lead.last_contacted_at is None:
        return True
    idle_days = (_utc_date(now) - _utc_date(lead.last_contacted_at)).days
    return idle_days > days + 1


def select_initial_enrollees(
    trigger: Trigger,
    leads: Iterable[Lead],
    now: datetime,
    exclude: AbstractSet[str] = frozenset(),
) -> List[str]:
    """Compute the lead ids a trigger enrolls at activation time.

    ``exclude`` holds lead ids that must not be selected, normally the leads
    already holding an active enrollment in the same workflow.
    """

    if isinstance(trigger, StatusEqualsTrigger):
        selected = [lead.id for lead in leads if lead.contact_status == trigger.status]
    elif isinstance(trigger, InactivityTrigger):
        selected = [lead.id for lead in leads if is_inactive(lead, trigger.days, now)]
    elif isinstance(trigger, (StatusChangedToTrigger, ManualTrigger)):
        selected = []
    else:  # pragma: no cover - exhaustive over Trigger
        raise TypeError(f"Unsupported trigger: {trigger!r}")

    result = [lead_id for lead_id in dict.fromkeys(selected) if lead_id not in exclude]
    logger.debug(f"Trigger {trigger.type} selected {len(result)} leads")
    return result


def matches_status_change(trigger: Trigger, event: StatusChanged) -> bool:
    """Return ``True`` if ``event`` is a transition the trigger listens for."""

    if not isinstance(trigger, StatusChangedToTrigger):
        return False
    if event.old_status == event.new_status:
        return False
    if event.new_status != trigger.to:
        return False
    return trigger.from_status is None or trigger.from_status == event.old_status
