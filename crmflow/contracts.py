"""Runtime records exchanged between the engine, the runner and the store."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import utcnow

EnrollmentStatus = Literal["active", "completed", "failed", "exited"]
TERMINAL_STATUSES = frozenset({"completed", "failed", "exited"})


class StepRecord(BaseModel):
    """History entry for one executed step."""

    step_id: str
    kind: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: Literal["completed", "skipped", "failed", "retrying"] = "completed"
    branch_taken: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class Enrollment(BaseModel):
    """One contact's run through one workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    workspace_id: Optional[str] = None
    contact_id: str
    status: EnrollmentStatus = "active"
    current_step_id: Optional[str] = None
    next_step_at: Optional[datetime] = None
    entered_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    step_history: List[StepRecord] = Field(default_factory=list)
    retry_count: int = 0
    last_error: Optional[str] = None
    claim_token: Optional[str] = None
    claimed_until: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ----------------------------------------------------------------------
# Step execution results


class _Result(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    branch_taken: Optional[str] = None
    skipped_reason: Optional[str] = None


class Advance(_Result):
    kind: Literal["advance"] = "advance"
    next_step_id: str
    next_step_at: datetime


class Complete(_Result):
    kind: Literal["complete"] = "complete"


class Fail(_Result):
    kind: Literal["fail"] = "fail"
    reason: str


class Exit(_Result):
    kind: Literal["exit"] = "exit"
    reason: str


ExecutionResult = Annotated[
    Union[Advance, Complete, Fail, Exit], Field(discriminator="kind")
]

ProcessOutcome = Literal[
    "advanced",
    "deferred",
    "completed",
    "exited",
    "failed",
    "retry_scheduled",
    "skipped",
]


class ProcessResult(BaseModel):
    """What a single ``process_step`` call did to an enrollment."""

    enrollment_id: str
    outcome: ProcessOutcome
    steps_executed: int = 0
    error: Optional[str] = None
    enrollment: Optional[Enrollment] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in ("advanced", "deferred", "completed", "exited")


# ----------------------------------------------------------------------
# Batch runner output


class BatchError(BaseModel):
    enrollment_id: str
    error: str


class BatchReport(BaseModel):
    selected: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0
    duration_ms: int = 0
    errors: List[BatchError] = Field(default_factory=list)


class HealthStats(BaseModel):
    status: str = "ok"
    timestamp: datetime = Field(default_factory=utcnow)
    pending_enrollments: int = 0
    active_enrollments: int = 0
    active_workflows: int = 0
