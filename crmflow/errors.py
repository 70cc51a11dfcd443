"""Exception types raised by the crmflow engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class CrmflowError(Exception):
    """Base class for all crmflow errors."""


class InvalidDefinition(CrmflowError):
    """A workflow graph or configuration is malformed."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        self.errors = list(errors or [])
        self.summary = message
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class InvalidTransition(CrmflowError):
    """A workflow status change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot change workflow status from {current} to {target}")


class WorkflowNotFound(CrmflowError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class EnrollmentNotFound(CrmflowError):
    def __init__(self, enrollment_id: str) -> None:
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment {enrollment_id} not found")


class EnrollmentRejected(CrmflowError):
    """A contact could not be enrolled into a workflow."""


class ExecutionFailure(CrmflowError):
    """Raised while executing a single step for an enrollment."""

    retryable: bool = False


class TransientExecutionFailure(ExecutionFailure):
    """Retryable failure, e.g. an external service timed out.

    ``progress`` carries what the failed attempt already did, so the next
    attempt can pick up from there instead of repeating side effects.
    """

    retryable = True

    def __init__(self, message: str, progress: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.progress = progress or {}


class UnrecoverableExecutionFailure(ExecutionFailure):
    """Failure that retrying will not fix."""


class LoopLimitExceeded(UnrecoverableExecutionFailure):
    """Too many steps were chained in a single processing call."""

    def __init__(self, limit: int, step_id: Optional[str] = None) -> None:
        self.limit = limit
        self.step_id = step_id
        super().__init__(
            f"Loop limit of {limit} steps exceeded"
            + (f" at step {step_id}" if step_id else "")
        )
