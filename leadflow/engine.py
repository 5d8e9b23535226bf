"""Wire the engine's components from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .authoring import WorkflowAuthoring
from .collaborators import (
    AgentEmailDrafter,
    EmailDrafter,
    EmailSender,
    HttpEmailSender,
    InMemoryEmailSender,
    InMemoryLeadStore,
    LeadStore,
    RestLeadStore,
)
from .config import LeadflowConfig, load_config
from .contracts import utcnow
from .enroll import Enroller
from .events import BaseEventBus, get_event_bus
from .execute import PassSummary, StepExecutor
from .listen import LeadEventListener
from .persistence import WorkflowRepository, get_repository


@dataclass
class Engine:
    config: LeadflowConfig
    repository: WorkflowRepository
    leads: LeadStore
    drafter: EmailDrafter
    sender: EmailSender
    events: BaseEventBus
    enroller: Enroller
    executor: StepExecutor
    authoring: WorkflowAuthoring
    listener: LeadEventListener

    async def tick(self, now: Optional[datetime] = None) -> tuple[Dict[str, int], PassSummary]:
        """One scheduler invocation: a trigger sweep followed by an executor pass."""

        now = now or utcnow()
        enrolled = await self.enroller.sweep(now)
        summary = await self.executor.run_due(now)
        return enrolled, summary


def build_lead_store(config: LeadflowConfig) -> LeadStore:
    if config.leads.base_url:
        return RestLeadStore(
            config.leads.base_url,
            api_key=config.leads.api_key,
            timeout=config.leads.timeout_seconds,
        )
    return InMemoryLeadStore()


def build_sender(config: LeadflowConfig) -> EmailSender:
    if config.delivery.endpoint:
        return HttpEmailSender(
            config.delivery.endpoint,
            senders=config.delivery.senders,
            api_key=config.delivery.api_key,
            timeout=config.delivery.timeout_seconds,
        )
    # An empty senders map means no owner may send until one is configured
    return InMemoryEmailSender(senders=config.delivery.senders)


def build_engine(
    config: Optional[LeadflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    leads: Optional[LeadStore] = None,
    drafter: Optional[EmailDrafter] = None,
    sender: Optional[EmailSender] = None,
    events: Optional[BaseEventBus] = None,
) -> Engine:
    """Build an engine; explicit collaborators override configured ones."""

    config = config or load_config()
    repository = repository or get_repository(config=config)
    leads = leads or build_lead_store(config)
    drafter = drafter or AgentEmailDrafter(
        config.drafting.model, timeout=config.drafting.timeout_seconds
    )
    sender = sender or build_sender(config)
    events = events or get_event_bus(config=config)

    enroller = Enroller(repository, leads)
    executor = StepExecutor(
        repository, leads, drafter, sender, events=events, config=config.engine
    )
    return Engine(
        config=config,
        repository=repository,
        leads=leads,
        drafter=drafter,
        sender=sender,
        events=events,
        enroller=enroller,
        executor=executor,
        authoring=WorkflowAuthoring(repository, leads, drafter),
        listener=LeadEventListener(events, enroller),
    )
