"""Leadflow: workflow automation for lead outreach sequences."""

from .authoring import WorkflowAuthoring
from .contracts import (
    Enrollment,
    EnrollmentStatus,
    Lead,
    Step,
    WorkflowDefinition,
)
from .engine import Engine, build_engine
from .enroll import Enroller
from .events import get_event_bus
from .execute import StepExecutor
from .listen import LeadEventListener
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "Engine",
    "Enroller",
    "Enrollment",
    "EnrollmentStatus",
    "Lead",
    "LeadEventListener",
    "Step",
    "StepExecutor",
    "WorkflowAuthoring",
    "WorkflowDefinition",
    "build_engine",
    "get_event_bus",
    "get_repository",
]
