from datetime import datetime, timezone

import pytest

from leadflow.authoring import WorkflowAuthoring
from leadflow.collaborators import InMemoryEmailSender, InMemoryLeadStore
from leadflow.contracts import EmailDraft
from leadflow.enroll import Enroller
from leadflow.events import InMemoryEventBus
from leadflow.execute import StepExecutor
from leadflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository

NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class StubDrafter:
    """Drafter that returns canned drafts, or raises queued failures first."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.calls = []

    async def draft(self, lead, action, workflow_name=None):
        self.calls.append((lead.id, action.email_type))
        if self.failures:
            raise self.failures.pop(0)
        return EmailDraft(
            subject=f"{action.email_type} for {lead.business_name}",
            body=f"Hello {lead.business_name}",
        )


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkflowRepository()
    return SQLiteWorkflowRepository(tmp_path / "leadflow.db")


@pytest.fixture
def leads():
    return InMemoryLeadStore()


@pytest.fixture
def drafter():
    return StubDrafter()


@pytest.fixture
def sender():
    return InMemoryEmailSender()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def enroller(repo, leads):
    return Enroller(repo, leads)


@pytest.fixture
def executor(repo, leads, drafter, sender, bus):
    return StepExecutor(repo, leads, drafter, sender, events=bus)


@pytest.fixture
def authoring(repo, leads, drafter):
    return WorkflowAuthoring(repo, leads, drafter)
