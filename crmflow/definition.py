"""Validation and status transitions for workflow definitions."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from .actions.personalization import unknown_tokens
from .errors import InvalidDefinition, InvalidTransition
from .models import (
    ActionStep,
    ConditionStep,
    GoToStep,
    SendEmailAction,
    SplitStep,
    Trigger,
    Workflow,
    WorkflowStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "draft": {"active", "archived"},
    "active": {"paused", "archived"},
    "paused": {"active", "archived"},
    "archived": {"draft"},
}


def load_workflow(data: Dict[str, Any]) -> Workflow:
    """Parse raw workflow data, reporting schema problems as ``InvalidDefinition``."""
    try:
        return Workflow.model_validate(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise InvalidDefinition("Workflow definition is invalid", errors) from exc


def reachable_steps(workflow: Workflow) -> Set[str]:
    """Return the ids of all steps reachable from the entry step."""
    entry = workflow.entry_step
    if entry is None:
        return set()
    steps = workflow.step_map()
    seen: Set[str] = set()
    queue = deque([entry.id])
    while queue:
        step_id = queue.popleft()
        if step_id in seen or step_id not in steps:
            continue
        seen.add(step_id)
        queue.extend(steps[step_id].targets())
    return seen


def _step_errors(workflow: Workflow) -> List[str]:
    errors: List[str] = []
    ids: Set[str] = set()
    for step in workflow.steps:
        if step.id in ids:
            errors.append(f"Duplicate step id {step.id}")
        ids.add(step.id)

    for step in workflow.steps:
        for target in step.targets():
            if target not in ids:
                errors.append(f"{step.label}: references unknown step {target}")

        if isinstance(step, ConditionStep):
            if not step.config.true_step_id or not step.config.false_step_id:
                errors.append(f"{step.label}: condition needs both branch targets")
        elif isinstance(step, GoToStep):
            if step.config.target_step_id == step.id:
                errors.append(f"{step.label}: go_to cannot target itself")
        elif isinstance(step, SplitStep):
            if step.config.split_type == "percentage":
                total = sum(v.percentage or 0 for v in step.config.variants)
                if abs(total - 100) > 0.01:
                    errors.append(f"{step.label}: split percentages must add up to 100")
        elif isinstance(step, ActionStep):
            config = step.config
            if isinstance(config, SendEmailAction) and not config.template_id:
                if not config.content_html:
                    errors.append(f"{step.label}: email requires a template or content")
                if not config.subject:
                    errors.append(f"{step.label}: email requires a subject line")
    return errors


def _trigger_errors(trigger: Optional[Trigger]) -> List[str]:
    if trigger is None:
        return ["Workflow must have a trigger configured"]
    config = trigger.config
    errors: List[str] = []
    if trigger.type in ("tag_added", "tag_removed") and not config.tag_ids:
        errors.append("Tag trigger requires at least one tag selected")
    elif trigger.type == "deal_stage_changed" and not config.to_stage_id:
        errors.append("Deal stage trigger requires a target stage")
    elif trigger.type == "form_submitted" and not config.form_id:
        errors.append("Form trigger requires a form selected")
    elif trigger.type == "date_based":
        if not config.date_field:
            errors.append("Date-based trigger requires a date field")
        if not config.time:
            errors.append("Date-based trigger requires a time")
    return errors


def _action_unknown_tokens(step: ActionStep) -> List[str]:
    texts = [
        value
        for name in ("subject", "content_html", "message", "title", "description")
        if isinstance(value := getattr(step.config, name, None), str)
    ]
    found: List[str] = []
    for text in texts:
        found.extend(t for t in unknown_tokens(text) if t not in found)
    return found


def validate(workflow: Workflow) -> List[str]:
    """Check the step graph of ``workflow``.

    Raises:
        InvalidDefinition: A step points at a missing step, a condition lacks
            a branch, or an action config is incomplete.

    Returns:
        Non-fatal warnings, e.g. when no end can be reached from the entry.
    """
    errors = _step_errors(workflow)
    if errors:
        raise InvalidDefinition("Workflow definition is invalid", errors)

    warnings: List[str] = []
    steps = workflow.step_map()
    reachable = reachable_steps(workflow)
    if reachable and not any(
        steps[step_id].kind == "end" or not steps[step_id].targets()
        for step_id in reachable
    ):
        warnings.append("No end step is reachable from the entry step")
    for step in workflow.steps:
        if isinstance(step, ActionStep):
            for token in _action_unknown_tokens(step):
                warnings.append(f"Step {step.id} uses unknown token {{{{{token}}}}}")
    for warning in warnings:
        logger.warning(f"Workflow {workflow.id}: {warning}")
    return warnings


def validate_for_activation(workflow: Workflow) -> List[str]:
    """Validate everything that must hold before ``workflow`` can go live."""
    errors = _trigger_errors(workflow.trigger)
    if not workflow.steps:
        errors.append("Workflow must have at least one step")
    errors.extend(_step_errors(workflow))
    if not errors:
        disconnected = [
            s.id for s in workflow.steps if s.id not in reachable_steps(workflow)
        ]
        if disconnected:
            errors.append(
                f"{len(disconnected)} step(s) are not connected to the workflow"
            )
    if errors:
        raise InvalidDefinition("Workflow validation failed", errors)
    return validate(workflow)


def transition(
    workflow: Workflow, target: WorkflowStatus, now: Optional[datetime] = None
) -> Workflow:
    """Return a copy of ``workflow`` moved to ``target`` status.

    Requesting the current status is a no-op.
    """
    if target == workflow.status:
        return workflow
    if target not in ALLOWED_TRANSITIONS[workflow.status]:
        raise InvalidTransition(workflow.status, target)
    if target == "active":
        validate_for_activation(workflow)

    now = now or utcnow()
    update: Dict[str, Any] = {"status": target, "updated_at": now}
    if target == "active":
        update["activated_at"] = now
    return workflow.model_copy(update=update)
