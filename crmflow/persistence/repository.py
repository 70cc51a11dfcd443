"""Repository abstraction for workflow and enrollment persistence."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional, Protocol

from ..contracts import Enrollment, EnrollmentStatus
from ..models import Workflow, WorkflowStatus

WorkflowCounter = Literal["enrolled_count", "completed_count"]


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    ``claim_enrollment`` and ``release_enrollment`` are conditional writes:
    a backend must apply them atomically so that two runners never hold the
    same enrollment at once.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or update a workflow definition (counters are left alone)."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        """Return workflows matching the given filters."""

    async def increment_counter(self, workflow_id: str, counter: WorkflowCounter) -> None:
        """Atomically bump ``enrolled_count`` or ``completed_count``."""

    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        """Insert an enrollment.

        With ``exclusive`` the insert is skipped (returning ``False``) when the
        contact already has an active enrollment in the same workflow.
        """

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment by id."""

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        contact_id: Optional[str] = None,
    ) -> List[Enrollment]:
        """Return enrollments matching the given filters."""

    async def list_due_enrollments(
        self, now: datetime, limit: int, workspace_id: Optional[str] = None
    ) -> List[Enrollment]:
        """Active enrollments with ``next_step_at <= now``, oldest first."""

    async def claim_enrollment(
        self, enrollment_id: str, token: str, now: datetime, lease_until: datetime
    ) -> Enrollment | None:
        """Take exclusive execution rights over a due, unclaimed enrollment."""

    async def release_enrollment(self, enrollment: Enrollment, token: str) -> bool:
        """Persist ``enrollment`` and drop the claim if ``token`` still holds it."""

    async def exit_enrollment(
        self, enrollment_id: str, reason: str, now: datetime
    ) -> bool:
        """Move an active enrollment to ``exited``."""

    async def count_enrollments(
        self, status: EnrollmentStatus, due_before: Optional[datetime] = None
    ) -> int:
        """Count enrollments in ``status``, optionally only the due ones."""

    async def count_workflows(self, status: WorkflowStatus) -> int:
        """Count workflows in ``status``."""
