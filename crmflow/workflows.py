"""Workflow definition management: save, look up and change status."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .definition import load_workflow, transition, validate, validate_for_activation
from .errors import WorkflowNotFound
from .models import Workflow, WorkflowStatus, utcnow
from .persistence import WorkflowRepository, get_repository

logger = logging.getLogger(__name__)


class WorkflowManager:
    """Validated access to workflow definitions.

    Every write goes through the definition checks, so a workflow stored as
    ``active`` always has a trigger and a connected step graph.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository or get_repository()
        self._clock = clock

    async def save(self, workflow: Union[Workflow, Dict[str, Any]]) -> Workflow:
        """Validate and store ``workflow``. Raw dicts are parsed first.

        Re-saving a stored workflow keeps its stored status unless ``status``
        is given explicitly, and an explicit change is checked against the
        status table the same way :meth:`change_status` is.
        """
        if not isinstance(workflow, Workflow):
            workflow = load_workflow(workflow)
        existing = await self._repository.get_workflow(workflow.id)
        if existing is not None:
            requested = (
                workflow.status
                if "status" in workflow.model_fields_set
                else existing.status
            )
            workflow = workflow.model_copy(
                update={
                    "status": existing.status,
                    "created_at": existing.created_at,
                    "activated_at": existing.activated_at,
                }
            )
            workflow = transition(workflow, requested, self._clock())
        if workflow.status == "active":
            validate_for_activation(workflow)
        else:
            validate(workflow)
        workflow = workflow.model_copy(update={"updated_at": self._clock()})
        await self._repository.save_workflow(workflow)
        logger.info(f"Saved workflow {workflow.id} ({workflow.name})")
        return workflow

    async def get(self, workflow_id: str) -> Workflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def list(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> List[Workflow]:
        return await self._repository.list_workflows(workspace_id, status)

    async def change_status(
        self, workflow_id: str, status: WorkflowStatus
    ) -> Workflow:
        """Move a workflow along the status table. Same-status requests are no-ops."""
        workflow = await self.get(workflow_id)
        updated = transition(workflow, status, self._clock())
        if updated is workflow:
            return workflow
        await self._repository.save_workflow(updated)
        logger.info(f"Workflow {workflow_id} changed from {workflow.status} to {status}")
        return updated

    async def activate(self, workflow_id: str) -> Workflow:
        return await self.change_status(workflow_id, "active")
