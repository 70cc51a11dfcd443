"""Handlers for the action step types."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contacts import ContactStore
from ..contracts import Enrollment
from ..errors import TransientExecutionFailure, UnrecoverableExecutionFailure
from ..messaging import MessageSender, SendResult
from ..models import (
    ActionConfig,
    AddTagAction,
    CreateDealAction,
    CreateTaskAction,
    RemoveTagAction,
    SendEmailAction,
    SendNotificationAction,
    SendSmsAction,
    UpdateFieldAction,
    Workflow,
)
from .personalization import personalize

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything an action handler may touch."""

    workflow: Workflow
    enrollment: Enrollment
    contact: Dict[str, Any]
    contacts: ContactStore
    sender: MessageSender
    now: datetime


class ActionOutcome(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    skipped_reason: Optional[str] = None


def _skip(reason: str) -> ActionOutcome:
    return ActionOutcome(skipped_reason=reason)


def _checked(result: SendResult, channel: str) -> SendResult:
    if not result.success:
        raise UnrecoverableExecutionFailure(
            result.error or f"{channel} provider reported failure"
        )
    return result


def _owner(ctx: ActionContext) -> Optional[str]:
    return ctx.contact.get("assigned_to") or ctx.workflow.created_by


# ----------------------------------------------------------------------
# Messaging


async def send_email(config: SendEmailAction, ctx: ActionContext) -> ActionOutcome:
    email = ctx.contact.get("email")
    if not email:
        return _skip("Contact does not have an email address")

    subject = personalize(config.subject or "", ctx.contact)
    html = personalize(config.content_html or "", ctx.contact)
    result = _checked(
        await ctx.sender.send(
            "email",
            email,
            {
                "subject": subject,
                "html": html,
                "template_id": config.template_id,
                "from_name": config.from_name,
                "from_email": config.from_email,
                "workflow_id": ctx.workflow.id,
                "contact_id": ctx.enrollment.contact_id,
            },
        ),
        "email",
    )
    return ActionOutcome(
        data={
            "to": email,
            "subject": subject,
            "message_id": result.id,
            "sent_at": ctx.now.isoformat(),
        }
    )


async def send_sms(config: SendSmsAction, ctx: ActionContext) -> ActionOutcome:
    phone = ctx.contact.get("phone")
    if not phone:
        return _skip("Contact does not have a phone number")

    message = personalize(config.message, ctx.contact)
    result = _checked(
        await ctx.sender.send(
            "sms",
            phone,
            {
                "message": message,
                "workflow_id": ctx.workflow.id,
                "contact_id": ctx.enrollment.contact_id,
            },
        ),
        "sms",
    )
    return ActionOutcome(
        data={
            "to": phone,
            "message": message,
            "message_id": result.id,
            "segments": math.ceil(len(message) / 160),
            "sent_at": ctx.now.isoformat(),
        }
    )


def _retry_progress(ctx: ActionContext) -> Dict[str, Any]:
    """Progress saved by the last failed attempt at the current step, if any."""
    history = ctx.enrollment.step_history
    if not history:
        return {}
    last = history[-1]
    if last.status != "retrying" or last.step_id != ctx.enrollment.current_step_id:
        return {}
    return last.result


async def _notify(
    channel: str, user: str, subject: str, message: str, ctx: ActionContext
) -> Any:
    if channel == "in_app":
        return await ctx.contacts.create_record(
            "notification",
            ctx.enrollment.contact_id,
            {
                "user_id": user,
                "title": subject,
                "message": message,
                "workflow_id": ctx.workflow.id,
                "read": False,
            },
        )
    result = _checked(
        await ctx.sender.send(
            channel,
            user,
            {
                "subject": subject,
                "message": message,
                "workflow_id": ctx.workflow.id,
                "contact_id": ctx.enrollment.contact_id,
            },
        ),
        channel,
    )
    return result.id


async def send_notification(
    config: SendNotificationAction, ctx: ActionContext
) -> ActionOutcome:
    recipients: List[str] = []
    for r in config.recipients:
        user = _owner(ctx) if r == "owner" else r
        if user and user not in recipients:
            recipients.append(user)
    if not recipients:
        return _skip("No valid recipients found")

    subject = personalize(config.subject, ctx.contact)
    message = personalize(config.message, ctx.contact)
    previous = _retry_progress(ctx)
    delivered: List[str] = list(previous.get("delivered", []))
    notification_ids: List[Any] = list(previous.get("notification_ids", []))
    for user in recipients:
        if user in delivered:
            continue
        try:
            notification_ids.append(
                await _notify(config.channel, user, subject, message, ctx)
            )
        except TransientExecutionFailure as exc:
            raise TransientExecutionFailure(
                str(exc),
                progress={"delivered": delivered, "notification_ids": notification_ids},
            ) from exc
        delivered.append(user)
    return ActionOutcome(
        data={
            "channel": config.channel,
            "recipients": recipients,
            "notification_ids": notification_ids,
        }
    )


# ----------------------------------------------------------------------
# Contact mutations


async def add_tag(config: AddTagAction, ctx: ActionContext) -> ActionOutcome:
    added = await ctx.contacts.add_tags(ctx.enrollment.contact_id, config.tag_ids)
    return ActionOutcome(data={"tag_ids": config.tag_ids, "added": added})


async def remove_tag(config: RemoveTagAction, ctx: ActionContext) -> ActionOutcome:
    removed = await ctx.contacts.remove_tags(ctx.enrollment.contact_id, config.tag_ids)
    return ActionOutcome(data={"tag_ids": config.tag_ids, "removed": removed})


async def update_field(config: UpdateFieldAction, ctx: ActionContext) -> ActionOutcome:
    value = config.value
    if isinstance(value, str):
        value = personalize(value, ctx.contact, use_fallbacks=False)
    old = await ctx.contacts.update_field(ctx.enrollment.contact_id, config.field, value)
    return ActionOutcome(
        data={"field": config.field, "old_value": old, "new_value": value}
    )


async def create_task(config: CreateTaskAction, ctx: ActionContext) -> ActionOutcome:
    due_at = (
        ctx.now + timedelta(days=config.due_in_days)
        if config.due_in_days is not None
        else None
    )
    task = {
        "title": personalize(config.title, ctx.contact),
        "description": personalize(config.description or "", ctx.contact) or None,
        "status": "pending",
        "priority": config.priority,
        "due_at": due_at.isoformat() if due_at else None,
        "assigned_to": config.assigned_to or _owner(ctx),
        "workspace_id": ctx.workflow.workspace_id,
        "workflow_id": ctx.workflow.id,
    }
    task_id = await ctx.contacts.create_record("task", ctx.enrollment.contact_id, task)
    return ActionOutcome(
        data={"task_id": task_id, "title": task["title"], "due_at": task["due_at"]}
    )


async def create_deal(config: CreateDealAction, ctx: ActionContext) -> ActionOutcome:
    deal = {
        "title": personalize(config.title, ctx.contact),
        "pipeline_id": config.pipeline_id,
        "stage_id": config.stage_id,
        "value": config.value,
        "assigned_to": config.assigned_to or _owner(ctx),
        "workspace_id": ctx.workflow.workspace_id,
        "workflow_id": ctx.workflow.id,
    }
    deal_id = await ctx.contacts.create_record("deal", ctx.enrollment.contact_id, deal)
    return ActionOutcome(
        data={"deal_id": deal_id, "title": deal["title"], "value": config.value}
    )


Handler = Callable[[Any, ActionContext], Awaitable[ActionOutcome]]

HANDLERS: Dict[str, Handler] = {
    "send_email": send_email,
    "send_sms": send_sms,
    "send_notification": send_notification,
    "add_tag": add_tag,
    "remove_tag": remove_tag,
    "update_field": update_field,
    "create_task": create_task,
    "create_deal": create_deal,
}


async def run_action(config: ActionConfig, ctx: ActionContext) -> ActionOutcome:
    """Dispatch ``config`` to its handler."""
    handler = HANDLERS.get(config.action)
    if handler is None:
        raise UnrecoverableExecutionFailure(f"Unknown action type: {config.action}")
    outcome = await handler(config, ctx)
    if outcome.skipped_reason:
        logger.warning(
            f"Skipped {config.action} for enrollment {ctx.enrollment.id}: {outcome.skipped_reason}"
        )
    return outcome
