"""Exception hierarchy for leadflow."""

from __future__ import annotations


class LeadflowError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(LeadflowError):
    """Operator-facing misconfiguration; never retried."""


class SenderNotConfigured(ConfigurationError):
    def __init__(self, owner: str) -> None:
        super().__init__(f"No outbound sender configured for owner {owner}")
        self.owner = owner


class WorkflowNotFound(LeadflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class EnrollmentNotFound(LeadflowError):
    def __init__(self, enrollment_id: str) -> None:
        super().__init__(f"Enrollment {enrollment_id} not found")
        self.enrollment_id = enrollment_id


class InvariantViolation(LeadflowError):
    """A write that would break a data invariant; rejected, never repaired."""


class DuplicateEnrollment(InvariantViolation):
    def __init__(self, workflow_id: str, lead_id: str) -> None:
        super().__init__(
            f"Lead {lead_id} already holds an active enrollment in workflow {workflow_id}"
        )
        self.workflow_id = workflow_id
        self.lead_id = lead_id


class StepOrderError(InvariantViolation):
    """Step orders are not contiguous and unique from 1, or a branch is invalid."""


class TriggerEvaluationError(LeadflowError):
    """The lead population could not be evaluated for a trigger."""


class StepFailed(LeadflowError):
    """Raised by step handlers when a step cannot complete."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TransientStepError(StepFailed):
    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class TerminalStepError(StepFailed):
    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class DraftingFailed(TransientStepError):
    """The drafting service errored or timed out."""


class EmptyDraft(TransientStepError):
    """The drafting service answered but produced no usable content."""


class DeliveryFailed(TransientStepError):
    """The outbound channel rejected or failed to accept the message."""


class LeadNotFound(LeadflowError):
    def __init__(self, lead_id: str) -> None:
        super().__init__(f"Lead {lead_id} not found")
        self.lead_id = lead_id
