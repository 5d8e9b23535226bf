"""AI email drafting."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from pydantic_ai import Agent

from ..contracts import EmailDraft, Lead, SendEmail
from ..errors import DraftingFailed, EmptyDraft

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write short B2B outreach emails.\n"
    "- Keep emails concise (under 150 words)\n"
    "- Personalize based on the business context\n"
    "- Include a clear call-to-action\n"
    "- Avoid being salesy or pushy"
)


def build_prompt(lead: Lead, action: SendEmail, workflow_name: Optional[str] = None) -> str:
    lines = [
        f"Lead: {lead.business_name or lead.email or lead.id}",
        f"Niche: {lead.niche or 'unknown'}",
        f"Status: {lead.contact_status}",
    ]
    if workflow_name:
        lines.append(f"Workflow: {workflow_name}")
    lines.extend(
        [
            f"Email Type: {action.email_type}",
            f"Tone: {action.tone}",
            f"Hint: {action.ai_hint or 'Write a compelling email'}",
        ]
    )
    return "\n".join(lines)


class EmailDrafter(Protocol):
    async def draft(
        self, lead: Lead, action: SendEmail, workflow_name: Optional[str] = None
    ) -> EmailDraft:
        """Return a subject and body, raising ``DraftingFailed`` or ``EmptyDraft``."""


class AgentEmailDrafter:
    """Draft emails with a pydantic-ai agent using structured output."""

    def __init__(self, model: Any = "openai:gpt-4o-mini", timeout: float = 30.0) -> None:
        self.agent = Agent(
            model,
            output_type=EmailDraft,
            system_prompt=SYSTEM_PROMPT,
            defer_model_check=True,
        )
        self.timeout = timeout

    async def draft(
        self, lead: Lead, action: SendEmail, workflow_name: Optional[str] = None
    ) -> EmailDraft:
        prompt = build_prompt(lead, action, workflow_name)
        try:
            result = await asyncio.wait_for(self.agent.run(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise DraftingFailed(f"Drafting timed out after {self.timeout}s") from e
        except Exception as e:
            raise DraftingFailed(f"Drafting failed: {e}") from e

        draft = result.output
        if not draft.subject.strip() or not draft.body.strip():
            raise EmptyDraft(f"Drafting returned no content for lead {lead.id}")
        logger.debug(f"Drafted {action.email_type} email for lead {lead.id}")
        return draft
