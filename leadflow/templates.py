"""Built-in workflow templates."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel

from .contracts import (
    InactivityTrigger,
    SendEmail,
    SetStatus,
    StatusChangedToTrigger,
    StatusEqualsTrigger,
    Step,
    Trigger,
)


class WorkflowTemplate(BaseModel):
    key: str
    name: str
    description: str
    trigger: Trigger
    steps: List[Step]

    @property
    def total_days(self) -> int:
        return sum(step.delay_days for step in self.steps)

    @property
    def email_count(self) -> int:
        return sum(1 for step in self.steps if isinstance(step.action, SendEmail))


def _email(order: int, delay: int, email_type: str, tone: str, hint: str) -> Step:
    return Step(
        order=order,
        delay_days=delay,
        action=SendEmail(email_type=email_type, tone=tone, ai_hint=hint),
    )


TEMPLATES: Dict[str, WorkflowTemplate] = {
    template.key: template
    for template in [
        WorkflowTemplate(
            key="cold-lead-revival",
            name="Cold Lead Revival",
            description="Re-engage leads that went cold. 3-email sequence over 14 days with value-first approach.",
            trigger=InactivityTrigger(days=14),
            steps=[
                _email(1, 0, "value_add", "friendly",
                       "Soft check-in, share 1 helpful insight or resource, ask if timing is bad."),
                _email(2, 5, "follow_up", "friendly",
                       "Quick bump, acknowledge they're busy, offer to close the loop if no interest."),
                _email(3, 5, "breakup", "friendly",
                       "Polite breakup; say you'll stop reaching out unless they want to reconnect."),
                Step(order=4, delay_days=4, action=SetStatus(next_status="cold")),
            ],
        ),
        WorkflowTemplate(
            key="new-lead-nurture",
            name="New Lead Nurture",
            description="Welcome and qualify new leads. 5-email sequence over 10 days building trust and value.",
            trigger=StatusEqualsTrigger(status="new"),
            steps=[
                _email(1, 0, "introduction", "friendly",
                       "Intro & welcome email. Introduce yourself and set expectations."),
                _email(2, 2, "value", "professional",
                       "Value email - case study or quick win relevant to their niche."),
                _email(3, 3, "social_proof", "professional",
                       "Social proof + ask for call. Share testimonials and request a meeting."),
                _email(4, 3, "objection_handling", "professional",
                       "Objection handling. Address common concerns preemptively."),
                _email(5, 2, "deadline", "direct",
                       "Soft deadline / 'is this a priority?' Create gentle urgency."),
            ],
        ),
        WorkflowTemplate(
            key="hot-lead-closer",
            name="Hot Lead Closer",
            description="Close deals faster after proposal sent. 3-email sequence over 3 days with urgency.",
            trigger=StatusChangedToTrigger(to="proposal_sent"),
            steps=[
                _email(1, 0, "proposal_follow_up", "professional",
                       "Recap proposal + call to action. Make it easy to say yes."),
                _email(2, 1, "objection_handling", "professional",
                       "Answer typical objections, add social proof. Reinforce value."),
                _email(3, 2, "last_call", "direct",
                       "Last call / next steps; if no reply, update status to 'Stalled / Nurture'."),
                Step(order=4, delay_days=1, action=SetStatus(next_status="nurture")),
            ],
        ),
    ]
}


def get_template(key: str) -> Optional[WorkflowTemplate]:
    return TEMPLATES.get(key)
