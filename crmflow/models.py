"""Workflow definition model.

A workflow is a trigger plus a graph of steps. Steps are addressed by their
``id`` and linked through ``next_step_id`` and kind-specific targets, so the
order of ``steps`` only matters for picking the entry step.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

WorkflowStatus = Literal["draft", "active", "paused", "archived"]

TriggerType = Literal[
    "contact_created",
    "contact_updated",
    "tag_added",
    "tag_removed",
    "deal_stage_changed",
    "deal_created",
    "form_submitted",
    "date_based",
    "manual",
]

FilterOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
    "in",
    "not_in",
]

_TIME_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Condition(BaseModel):
    """Single comparison against a field of the contact snapshot."""

    field: str = Field(..., min_length=1)
    operator: FilterOperator
    value: Any = None


# ----------------------------------------------------------------------
# Trigger


class TriggerConfig(BaseModel):
    """Trigger settings. Which fields are required depends on the type."""

    filters: List[Condition] = Field(default_factory=list)
    tag_ids: List[str] = Field(default_factory=list)
    fields: List[str] = Field(default_factory=list)
    pipeline_id: Optional[str] = None
    from_stage_id: Optional[str] = None
    to_stage_id: Optional[str] = None
    form_id: Optional[str] = None
    date_field: Optional[str] = None
    offset_days: int = 0
    time: Optional[str] = Field(default=None, pattern=_TIME_PATTERN)


class Trigger(BaseModel):
    type: TriggerType
    config: TriggerConfig = Field(default_factory=TriggerConfig)


# ----------------------------------------------------------------------
# Action configs, keyed by ``action``


class SendEmailAction(BaseModel):
    action: Literal["send_email"] = "send_email"
    template_id: Optional[str] = None
    subject: Optional[str] = Field(default=None, max_length=200)
    content_html: Optional[str] = None
    from_name: Optional[str] = Field(default=None, max_length=100)
    from_email: Optional[str] = None


class SendSmsAction(BaseModel):
    action: Literal["send_sms"] = "send_sms"
    message: str = Field(..., min_length=1, max_length=1600)


class AddTagAction(BaseModel):
    action: Literal["add_tag"] = "add_tag"
    tag_ids: List[str] = Field(..., min_length=1)


class RemoveTagAction(BaseModel):
    action: Literal["remove_tag"] = "remove_tag"
    tag_ids: List[str] = Field(..., min_length=1)


class UpdateFieldAction(BaseModel):
    action: Literal["update_field"] = "update_field"
    field: str = Field(..., min_length=1)
    value: Union[str, int, float, bool, None] = None


class CreateTaskAction(BaseModel):
    action: Literal["create_task"] = "create_task"
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    due_in_days: Optional[int] = None
    assigned_to: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"


class CreateDealAction(BaseModel):
    action: Literal["create_deal"] = "create_deal"
    pipeline_id: str = Field(..., min_length=1)
    stage_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    value: float = 0
    assigned_to: Optional[str] = None


class SendNotificationAction(BaseModel):
    action: Literal["send_notification"] = "send_notification"
    channel: Literal["email", "in_app", "slack"] = "in_app"
    recipients: List[str] = Field(..., min_length=1)
    subject: str = ""
    message: str = Field(..., min_length=1)


ActionConfig = Annotated[
    Union[
        SendEmailAction,
        SendSmsAction,
        AddTagAction,
        RemoveTagAction,
        UpdateFieldAction,
        CreateTaskAction,
        CreateDealAction,
        SendNotificationAction,
    ],
    Field(discriminator="action"),
]


# ----------------------------------------------------------------------
# Control configs


class ConditionConfig(BaseModel):
    conditions: List[Condition] = Field(..., min_length=1)
    logic: Literal["and", "or"] = "and"
    true_step_id: Optional[str] = None
    false_step_id: Optional[str] = None


class SplitVariant(BaseModel):
    id: str
    name: str = ""
    percentage: Optional[float] = Field(default=None, ge=0, le=100)
    next_step_id: Optional[str] = None


class SplitConfig(BaseModel):
    split_type: Literal["percentage", "random"] = "random"
    variants: List[SplitVariant] = Field(..., min_length=1)


class WaitConfig(BaseModel):
    """How long an enrollment sleeps before moving on.

    Exactly one of ``duration``, ``until`` or ``next_business_day_at`` must
    be set.
    """

    duration: Optional[int] = Field(default=None, ge=0)
    unit: Literal["minutes", "hours", "days", "weeks"] = "days"
    until: Optional[datetime] = None
    next_business_day_at: Optional[str] = Field(default=None, pattern=_TIME_PATTERN)

    @model_validator(mode="after")
    def _one_mode(self) -> "WaitConfig":
        modes = [
            self.duration is not None,
            self.until is not None,
            self.next_business_day_at is not None,
        ]
        if sum(modes) != 1:
            raise ValueError(
                "wait needs exactly one of duration, until or next_business_day_at"
            )
        return self


class GoToConfig(BaseModel):
    target_step_id: str = Field(..., min_length=1)


class EndConfig(BaseModel):
    pass


# ----------------------------------------------------------------------
# Steps


class StepBase(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    next_step_id: Optional[str] = None

    def targets(self) -> List[str]:
        """Return every step id this step can hand control to."""
        return [self.next_step_id] if self.next_step_id else []

    @property
    def label(self) -> str:
        return self.name or f"{self.kind} step {self.id}"  # type: ignore[attr-defined]


class ActionStep(StepBase):
    kind: Literal["action"] = "action"
    config: ActionConfig


class ConditionStep(StepBase):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig

    def targets(self) -> List[str]:
        return [
            t for t in (self.config.true_step_id, self.config.false_step_id) if t
        ]


class SplitStep(StepBase):
    kind: Literal["split"] = "split"
    config: SplitConfig

    def targets(self) -> List[str]:
        targets = [v.next_step_id for v in self.config.variants if v.next_step_id]
        return targets + super().targets()


class WaitStep(StepBase):
    kind: Literal["wait"] = "wait"
    config: WaitConfig


class GoToStep(StepBase):
    kind: Literal["go_to"] = "go_to"
    config: GoToConfig

    def targets(self) -> List[str]:
        return [self.config.target_step_id]


class EndStep(StepBase):
    kind: Literal["end"] = "end"
    config: EndConfig = Field(default_factory=EndConfig)

    def targets(self) -> List[str]:
        return []


Step = Annotated[
    Union[ActionStep, ConditionStep, SplitStep, WaitStep, GoToStep, EndStep],
    Field(discriminator="kind"),
]

# Steps with no side effects; they may be chained within a single tick.
CONTROL_KINDS = frozenset({"condition", "split", "go_to", "wait"})


# ----------------------------------------------------------------------
# Workflow


class WorkingHours(BaseModel):
    start: str = Field(default="09:00", pattern=_TIME_PATTERN)
    end: str = Field(default="17:00", pattern=_TIME_PATTERN)
    # ISO weekdays, Monday is 1
    days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])

    @field_validator("days")
    @classmethod
    def _check_days(cls, v: List[int]) -> List[int]:
        if not v or any(d < 1 or d > 7 for d in v):
            raise ValueError("working days must be ISO weekdays between 1 and 7")
        return sorted(set(v))

    @model_validator(mode="after")
    def _check_window(self) -> "WorkingHours":
        # zero-padded HH:MM strings order the same way as the times
        if self.start >= self.end:
            raise ValueError(
                f"working hours start {self.start} must be before end {self.end}"
            )
        return self


class WorkflowSettings(BaseModel):
    allow_re_enrollment: bool = False
    enrollment_limit: Optional[int] = Field(default=None, ge=1)
    timezone: str = "UTC"
    working_hours_only: bool = False
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    exit_conditions: List[Condition] = Field(default_factory=list)
    exit_logic: Literal["and", "or"] = "or"

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {v}") from exc
        return v


class Workflow(BaseModel):
    """Automation definition owned by a workspace."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: str
    name: str
    description: Optional[str] = None
    status: WorkflowStatus = "draft"
    trigger: Optional[Trigger] = None
    steps: List[Step] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    enrolled_count: int = 0
    completed_count: int = 0
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    activated_at: Optional[datetime] = None

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def entry_step(self) -> Optional[Step]:
        return self.steps[0] if self.steps else None

    def step_map(self) -> Dict[str, Step]:
        return {step.id: step for step in self.steps}
