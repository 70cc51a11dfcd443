"""Step executor and enrollment state machine driver."""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .actions import ActionContext, run_action
from .conditions import evaluate
from .config import EngineConfig, load_config
from .contacts import ContactStore, get_contact_store
from .contracts import (
    Advance,
    Complete,
    Enrollment,
    ExecutionResult,
    Exit,
    Fail,
    ProcessOutcome,
    ProcessResult,
    StepRecord,
)
from .errors import (
    EnrollmentNotFound,
    EnrollmentRejected,
    LoopLimitExceeded,
    TransientExecutionFailure,
    UnrecoverableExecutionFailure,
    WorkflowNotFound,
)
from .messaging import MessageSender, get_message_sender
from .models import (
    CONTROL_KINDS,
    ActionStep,
    ConditionStep,
    EndStep,
    GoToStep,
    SplitStep,
    Step,
    WaitStep,
    Workflow,
    utcnow,
)
from .persistence import WorkflowRepository, get_repository
from .scheduling import next_working_time, wait_until, within_working_hours
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """Inputs for executing one step of one enrollment."""

    workflow: Workflow
    enrollment: Enrollment
    contact: Dict[str, Any]
    now: datetime


class WorkflowEngine:
    """Runs enrollments through their workflow graph.

    The engine holds no per-enrollment state between calls: every
    ``process_step`` claims the enrollment in the repository, works on the
    claimed copy and writes it back conditionally on the claim token.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        contacts: ContactStore | None = None,
        sender: MessageSender | None = None,
        config: EngineConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository or get_repository()
        self._contacts = contacts or get_contact_store()
        self._sender = sender or get_message_sender()
        self.config = config or load_config().engine
        self._rng = rng or random.Random()
        self._clock = clock

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Enrollment lifecycle
    async def enroll(
        self,
        workflow_id: str,
        contact_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Start a run of ``workflow_id`` for ``contact_id`` at the entry step."""
        now = now or self._clock()
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        if workflow.status != "active":
            raise EnrollmentRejected(f"Workflow {workflow_id} is not active")
        entry = workflow.entry_step
        if entry is None:
            raise EnrollmentRejected(f"Workflow {workflow_id} has no steps")
        limit = workflow.settings.enrollment_limit
        if limit is not None and workflow.enrolled_count >= limit:
            raise EnrollmentRejected(
                f"Workflow {workflow_id} reached its enrollment limit of {limit}"
            )

        enrollment = Enrollment(
            workflow_id=workflow.id,
            workspace_id=workflow.workspace_id,
            contact_id=contact_id,
            current_step_id=entry.id,
            next_step_at=now,
            entered_at=now,
            updated_at=now,
            trigger_data=trigger_data or {},
        )
        created = await self._repository.create_enrollment(
            enrollment, exclusive=not workflow.settings.allow_re_enrollment
        )
        if not created:
            raise EnrollmentRejected(
                f"Contact {contact_id} is already enrolled in workflow {workflow_id}"
            )
        await self._repository.increment_counter(workflow.id, "enrolled_count")
        logger.info(
            f"Enrolled contact {contact_id} in workflow {workflow_id} as {enrollment.id}"
        )
        return enrollment

    async def exit_enrollment(
        self,
        enrollment_id: str,
        reason: str = "Manually exited",
        now: Optional[datetime] = None,
    ) -> bool:
        """Stop an active run. Returns ``False`` if it had already ended."""
        if await self._repository.get_enrollment(enrollment_id) is None:
            raise EnrollmentNotFound(enrollment_id)
        exited = await self._repository.exit_enrollment(
            enrollment_id, reason, now or self._clock()
        )
        if exited:
            logger.info(f"Enrollment {enrollment_id} exited: {reason}")
        return exited

    # ------------------------------------------------------------------
    # Step execution
    async def execute_step(self, step: Step, ctx: StepContext) -> ExecutionResult:
        """Run a single step and describe where the enrollment goes next."""
        if isinstance(step, EndStep):
            return Complete()
        if isinstance(step, GoToStep):
            return Advance(next_step_id=step.config.target_step_id, next_step_at=ctx.now)
        if isinstance(step, ConditionStep):
            matched = evaluate(step.config.conditions, ctx.contact, step.config.logic)
            target = step.config.true_step_id if matched else step.config.false_step_id
            return self._follow(target, ctx.now, branch_taken=str(matched).lower())
        if isinstance(step, SplitStep):
            variant = self._pick_variant(step)
            return self._follow(
                variant.next_step_id or step.next_step_id,
                ctx.now,
                branch_taken=variant.id,
            )
        if isinstance(step, WaitStep):
            resume_at = wait_until(step.config, ctx.now, ctx.workflow.settings)
            return self._follow(
                step.next_step_id, resume_at, data={"wait_until": resume_at.isoformat()}
            )
        if isinstance(step, ActionStep):
            outcome = await run_action(
                step.config,
                ActionContext(
                    workflow=ctx.workflow,
                    enrollment=ctx.enrollment,
                    contact=ctx.contact,
                    contacts=self._contacts,
                    sender=self._sender,
                    now=ctx.now,
                ),
            )
            next_at = ctx.now + timedelta(seconds=self.config.action_delay_seconds)
            settings = ctx.workflow.settings
            if settings.working_hours_only:
                next_at = next_working_time(next_at, settings)
            return self._follow(
                step.next_step_id,
                next_at,
                data=outcome.data,
                skipped_reason=outcome.skipped_reason,
            )
        raise UnrecoverableExecutionFailure(f"Unknown step type: {step.kind}")

    @staticmethod
    def _follow(
        target: Optional[str], at: datetime, **fields: Any
    ) -> ExecutionResult:
        if target is None:
            return Complete(**fields)
        return Advance(next_step_id=target, next_step_at=at, **fields)

    def _pick_variant(self, step: SplitStep):
        variants = step.config.variants
        if step.config.split_type == "random":
            return self._rng.choice(variants)
        weights = [v.percentage or 0 for v in variants]
        total = sum(weights)
        if total <= 0:
            return self._rng.choice(variants)
        roll = self._rng.uniform(0, total)
        cumulative = 0.0
        for variant, weight in zip(variants, weights):
            cumulative += weight
            if roll < cumulative:
                return variant
        return variants[-1]

    # ------------------------------------------------------------------
    # Processing driver
    async def process_step(
        self, enrollment_id: str, now: Optional[datetime] = None
    ) -> ProcessResult:
        """Claim ``enrollment_id`` and advance it as far as this tick allows."""
        now = now or self._clock()
        token = str(uuid.uuid4())
        enrollment = await self._repository.claim_enrollment(
            enrollment_id,
            token,
            now,
            now + timedelta(seconds=self.config.claim_lease_seconds),
        )
        if enrollment is None:
            logger.debug(f"Enrollment {enrollment_id} not claimable, skipping")
            return ProcessResult(enrollment_id=enrollment_id, outcome="skipped")

        history_before = len(enrollment.step_history)
        error: Optional[str] = None
        try:
            outcome = await self._run(enrollment, now)
        except TransientExecutionFailure as exc:
            error = str(exc)
            kind = await self._current_kind(enrollment)
            outcome = self._schedule_retry(enrollment, exc, now, kind)
        except Exception as exc:
            error = str(exc)
            logger.error(f"Enrollment {enrollment_id} failed: {exc}")
            kind = await self._current_kind(enrollment)
            self._record(enrollment, now, kind=kind, status="failed", error=error)
            self._terminate(enrollment, "failed", now, error=error)
            outcome = "failed"

        enrollment.updated_at = now
        saved = await self._repository.release_enrollment(enrollment, token)
        if not saved:
            logger.warning(
                f"Lost claim on enrollment {enrollment_id}; discarding this tick's state"
            )
            return ProcessResult(
                enrollment_id=enrollment_id,
                outcome="skipped",
                error="claim lost before write",
            )
        if outcome == "completed":
            await self._repository.increment_counter(
                enrollment.workflow_id, "completed_count"
            )
        executed = sum(
            1
            for r in enrollment.step_history[history_before:]
            if r.status in ("completed", "skipped")
        )
        return ProcessResult(
            enrollment_id=enrollment_id,
            outcome=outcome,
            steps_executed=executed,
            error=error,
            enrollment=enrollment,
        )

    async def _run(self, enrollment: Enrollment, now: datetime) -> ProcessOutcome:
        workflow = await self._repository.get_workflow(enrollment.workflow_id)
        if workflow is None:
            raise WorkflowNotFound(enrollment.workflow_id)
        if workflow.status == "paused":
            enrollment.next_step_at = now + timedelta(
                seconds=self.config.paused_recheck_seconds
            )
            return "deferred"
        if workflow.status != "active":
            self._terminate(
                enrollment, "exited", now, reason=f"Workflow is {workflow.status}"
            )
            return "exited"

        contact = await self._contacts.get_contact(enrollment.contact_id)
        if contact is None:
            raise UnrecoverableExecutionFailure(
                f"Contact {enrollment.contact_id} not found"
            )
        context = {**contact, "trigger": enrollment.trigger_data}
        settings = workflow.settings
        if settings.exit_conditions and evaluate(
            settings.exit_conditions, context, settings.exit_logic
        ):
            self._terminate(enrollment, "exited", now, reason="Exit condition met")
            return "exited"

        executed = 0
        while True:
            step = workflow.get_step(enrollment.current_step_id)
            if step is None:
                raise UnrecoverableExecutionFailure(
                    f"Step {enrollment.current_step_id} not found in workflow {workflow.id}"
                )
            if isinstance(step, ActionStep) and not within_working_hours(now, settings):
                enrollment.next_step_at = next_working_time(now, settings)
                return "advanced" if executed else "deferred"
            if executed >= self.config.max_steps_per_tick:
                raise LoopLimitExceeded(self.config.max_steps_per_tick, step.id)

            result = await self.execute_step(
                step, StepContext(workflow, enrollment, context, now)
            )
            executed += 1
            self._record(
                enrollment,
                now,
                step=step,
                status="skipped" if result.skipped_reason else "completed",
                branch_taken=result.branch_taken,
                data=result.data,
                error=result.skipped_reason,
            )
            enrollment.retry_count = 0
            enrollment.last_error = None

            if isinstance(result, Complete):
                self._terminate(enrollment, "completed", now)
                return "completed"
            if isinstance(result, Fail):
                self._terminate(enrollment, "failed", now, error=result.reason)
                return "failed"
            if isinstance(result, Exit):
                self._terminate(enrollment, "exited", now, reason=result.reason)
                return "exited"

            if workflow.get_step(result.next_step_id) is None:
                raise UnrecoverableExecutionFailure(
                    f"Step {step.id} points at missing step {result.next_step_id}"
                )
            enrollment.current_step_id = result.next_step_id
            enrollment.next_step_at = result.next_step_at
            if step.kind not in CONTROL_KINDS or result.next_step_at > now:
                return "advanced"

    async def _current_kind(self, enrollment: Enrollment) -> str:
        workflow = await self._repository.get_workflow(enrollment.workflow_id)
        step = workflow.get_step(enrollment.current_step_id) if workflow else None
        return step.kind if step else "unknown"

    def _schedule_retry(
        self,
        enrollment: Enrollment,
        exc: TransientExecutionFailure,
        now: datetime,
        kind: str,
    ) -> ProcessOutcome:
        enrollment.retry_count += 1
        enrollment.last_error = str(exc)
        if enrollment.retry_count > self.config.max_retries:
            reason = f"Retries exhausted after {self.config.max_retries} attempts: {exc}"
            logger.error(f"Enrollment {enrollment.id} failed: {reason}")
            self._record(enrollment, now, kind=kind, status="failed", error=reason)
            self._terminate(enrollment, "failed", now, error=reason)
            return "failed"

        delay = compute_backoff(
            enrollment.retry_count,
            initial=self.config.retry_backoff_initial,
            base=self.config.retry_backoff_base,
            jitter=self.config.retry_jitter,
            rng=self._rng,
        )
        enrollment.next_step_at = now + timedelta(seconds=delay)
        self._record(
            enrollment,
            now,
            kind=kind,
            status="retrying",
            data=exc.progress,
            error=str(exc),
        )
        logger.warning(
            f"Enrollment {enrollment.id} hit a transient error, retry "
            f"{enrollment.retry_count}/{self.config.max_retries} in {delay:.0f}s: {exc}"
        )
        return "retry_scheduled"

    @staticmethod
    def _record(
        enrollment: Enrollment,
        now: datetime,
        step: Optional[Step] = None,
        kind: str = "unknown",
        status: str = "completed",
        branch_taken: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        enrollment.step_history.append(
            StepRecord(
                step_id=step.id if step else enrollment.current_step_id or "",
                kind=step.kind if step else kind,
                started_at=now,
                completed_at=now,
                status=status,
                branch_taken=branch_taken,
                result=data or {},
                error=error,
            )
        )

    @staticmethod
    def _terminate(
        enrollment: Enrollment,
        status: str,
        now: datetime,
        reason: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        enrollment.status = status
        enrollment.next_step_at = None
        enrollment.claim_token = None
        enrollment.claimed_until = None
        if status == "exited":
            enrollment.exited_at = now
            enrollment.exit_reason = reason
        else:
            enrollment.completed_at = now
        if error is not None:
            enrollment.last_error = error
        logger.info(
            f"Enrollment {enrollment.id} {status}"
            + (f": {reason or error}" if reason or error else "")
        )
