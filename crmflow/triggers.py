"""Match CRM events to active workflows and enroll the affected contact."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .conditions import evaluate
from .contacts import ContactStore
from .contracts import Enrollment
from .engine import WorkflowEngine
from .errors import CrmflowError
from .models import Trigger, TriggerType, Workflow

logger = logging.getLogger(__name__)


class TriggerEvent(BaseModel):
    """Something that happened to a contact in a workspace.

    ``data`` carries the event details the trigger configs are matched
    against: ``tag_ids`` for tag events, ``pipeline_id`` / ``from_stage_id`` /
    ``to_stage_id`` for deal events, ``form_id`` for form submissions and
    ``changed_fields`` for contact updates.
    """

    type: TriggerType
    workspace_id: str
    contact_id: str
    data: Dict[str, Any] = Field(default_factory=dict)


def _overlap(configured: List[str], actual: List[str]) -> List[str]:
    return [t for t in actual if t in configured]


def matches_trigger(trigger: Trigger, event: TriggerEvent) -> bool:
    """Check the type-specific part of a trigger config against ``event``."""
    if trigger.type != event.type:
        return False
    config = trigger.config
    data = event.data
    if event.type in ("tag_added", "tag_removed"):
        return bool(_overlap(config.tag_ids, data.get("tag_ids") or []))
    if event.type == "deal_stage_changed":
        if config.pipeline_id and config.pipeline_id != data.get("pipeline_id"):
            return False
        if config.to_stage_id != data.get("to_stage_id"):
            return False
        return not config.from_stage_id or config.from_stage_id == data.get(
            "from_stage_id"
        )
    if event.type == "deal_created":
        return not config.pipeline_id or config.pipeline_id == data.get("pipeline_id")
    if event.type == "form_submitted":
        return config.form_id == data.get("form_id")
    if event.type == "contact_updated" and config.fields:
        return bool(_overlap(config.fields, data.get("changed_fields") or []))
    return True


class TriggerDispatcher:
    """Fan an event out to every matching active workflow of the workspace."""

    def __init__(self, engine: WorkflowEngine, contacts: ContactStore) -> None:
        self._engine = engine
        self._contacts = contacts

    async def handle(self, event: TriggerEvent) -> List[Enrollment]:
        workflows = await self._engine.repository.list_workflows(
            workspace_id=event.workspace_id, status="active", trigger_type=event.type
        )
        if not workflows:
            return []

        contact = await self._contacts.get_contact(event.contact_id)
        if contact is None:
            logger.warning(
                f"Ignoring {event.type} event for unknown contact {event.contact_id}"
            )
            return []

        enrollments: List[Enrollment] = []
        for workflow in workflows:
            enrollment = await self._try_enroll(workflow, event, contact)
            if enrollment is not None:
                enrollments.append(enrollment)
        return enrollments

    async def _try_enroll(
        self, workflow: Workflow, event: TriggerEvent, contact: Dict[str, Any]
    ) -> Optional[Enrollment]:
        trigger = workflow.trigger
        if trigger is None or not matches_trigger(trigger, event):
            return None
        if trigger.config.filters and not evaluate(trigger.config.filters, contact):
            logger.debug(
                f"Contact {event.contact_id} does not match filters of workflow {workflow.id}"
            )
            return None
        try:
            return await self._engine.enroll(
                workflow.id,
                event.contact_id,
                trigger_data={"trigger": event.type, **event.data},
            )
        except CrmflowError as exc:
            logger.info(
                f"Did not enroll contact {event.contact_id} in workflow {workflow.id}: {exc}"
            )
            return None
