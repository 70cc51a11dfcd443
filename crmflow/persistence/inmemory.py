"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from ..contracts import Enrollment, EnrollmentStatus
from ..models import Workflow, WorkflowStatus
from .repository import WorkflowCounter, WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        async with self._lock:
            existing = self._workflows.get(workflow.id)
            stored = workflow.model_copy(deep=True)
            if existing is not None:
                stored.enrolled_count = existing.enrolled_count
                stored.completed_count = existing.completed_count
            self._workflows[workflow.id] = stored

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (workspace_id is None or wf.workspace_id == workspace_id)
            and (status is None or wf.status == status)
            and (
                trigger_type is None
                or (wf.trigger is not None and wf.trigger.type == trigger_type)
            )
        ]

    async def increment_counter(self, workflow_id: str, counter: WorkflowCounter) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf:
                setattr(wf, counter, getattr(wf, counter) + 1)

    # ------------------------------------------------------------------
    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        async with self._lock:
            if exclusive and any(
                e.workflow_id == enrollment.workflow_id
                and e.contact_id == enrollment.contact_id
                and e.status == "active"
                for e in self._enrollments.values()
            ):
                return False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        e = self._enrollments.get(enrollment_id)
        return e.model_copy(deep=True) if e else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        contact_id: Optional[str] = None,
    ) -> List[Enrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
            and (contact_id is None or e.contact_id == contact_id)
        ]

    async def list_due_enrollments(
        self, now: datetime, limit: int, workspace_id: Optional[str] = None
    ) -> List[Enrollment]:
        due = [
            e
            for e in self._enrollments.values()
            if e.status == "active"
            and e.next_step_at is not None
            and e.next_step_at <= now
            and (workspace_id is None or e.workspace_id == workspace_id)
        ]
        due.sort(key=lambda e: e.next_step_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def claim_enrollment(
        self, enrollment_id: str, token: str, now: datetime, lease_until: datetime
    ) -> Enrollment | None:
        async with self._lock:
            e = self._enrollments.get(enrollment_id)
            if (
                e is None
                or e.status != "active"
                or e.next_step_at is None
                or e.next_step_at > now
                or (e.claimed_until is not None and e.claimed_until >= now)
            ):
                return None
            e.claim_token = token
            e.claimed_until = lease_until
            return e.model_copy(deep=True)

    async def release_enrollment(self, enrollment: Enrollment, token: str) -> bool:
        async with self._lock:
            current = self._enrollments.get(enrollment.id)
            if current is None or current.claim_token != token or current.status != "active":
                return False
            stored = enrollment.model_copy(deep=True)
            stored.claim_token = None
            stored.claimed_until = None
            self._enrollments[enrollment.id] = stored
            return True

    async def exit_enrollment(
        self, enrollment_id: str, reason: str, now: datetime
    ) -> bool:
        async with self._lock:
            e = self._enrollments.get(enrollment_id)
            if e is None or e.status != "active":
                return False
            e.status = "exited"
            e.exit_reason = reason
            e.exited_at = now
            e.next_step_at = None
            e.claim_token = None
            e.claimed_until = None
            e.updated_at = now
            return True

    async def count_enrollments(
        self, status: EnrollmentStatus, due_before: Optional[datetime] = None
    ) -> int:
        return sum(
            1
            for e in self._enrollments.values()
            if e.status == status
            and (
                due_before is None
                or (e.next_step_at is not None and e.next_step_at <= due_before)
            )
        )

    async def count_workflows(self, status: WorkflowStatus) -> int:
        return sum(1 for wf in self._workflows.values() if wf.status == status)
