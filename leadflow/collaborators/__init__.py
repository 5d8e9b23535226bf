"""External collaborators: lead store, email drafting and email delivery."""

from .delivery import EmailSender, HttpEmailSender, InMemoryEmailSender, SentEmail
from .drafting import AgentEmailDrafter, EmailDrafter, build_prompt
from .leads import InMemoryLeadStore, LeadStore, RestLeadStore

__all__ = [
    "AgentEmailDrafter",
    "EmailDrafter",
    "EmailSender",
    "HttpEmailSender",
    "InMemoryEmailSender",
    "InMemoryLeadStore",
    "LeadStore",
    "RestLeadStore",
    "SentEmail",
    "build_prompt",
]
