"""Batch runner that advances due enrollments."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from .config import EngineConfig
from .contracts import BatchError, BatchReport, HealthStats, ProcessResult
from .engine import WorkflowEngine
from .models import utcnow

logger = logging.getLogger(__name__)


class BatchRunner:
    """Select due enrollments and feed them to the engine within a time budget.

    The runner keeps nothing between invocations; overlapping runs are safe
    because the engine claims every enrollment before touching it.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        config: EngineConfig | None = None,
        timer: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._repository = engine.repository
        self.config = config or engine.config
        self._timer = timer
        self._clock = clock

    async def run_batch(
        self,
        now: Optional[datetime] = None,
        max_count: Optional[int] = None,
        max_duration: Optional[float] = None,
        workspace_id: Optional[str] = None,
    ) -> BatchReport:
        """Process up to ``max_count`` due enrollments.

        ``max_duration`` is in seconds. Once it has elapsed no further
        enrollment is started; work already in flight is allowed to finish.
        """
        now = now or self._clock()
        max_count = max_count if max_count is not None else self.config.batch_size
        max_duration = (
            max_duration
            if max_duration is not None
            else self.config.max_processing_seconds
        )
        started = self._timer()
        report = BatchReport()

        due = await self._repository.list_due_enrollments(now, max_count, workspace_id)
        report.selected = len(due)
        logger.info(f"Found {len(due)} due enrollment(s)")

        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))
        out_of_time = False

        async def handle(enrollment_id: str) -> None:
            nonlocal out_of_time
            async with semaphore:
                if out_of_time or self._timer() - started >= max_duration:
                    out_of_time = True
                    return
                report.processed += 1
                try:
                    result = await self._engine.process_step(enrollment_id, now)
                except Exception as exc:
                    logger.exception(f"Error processing enrollment {enrollment_id}")
                    report.failed += 1
                    report.errors.append(
                        BatchError(enrollment_id=enrollment_id, error=str(exc))
                    )
                    return
                self._tally(report, result)

        await asyncio.gather(*(handle(e.id) for e in due))

        report.remaining = report.selected - report.processed
        report.duration_ms = int((self._timer() - started) * 1000)
        if out_of_time:
            logger.warning(
                f"Time budget of {max_duration}s reached, {report.remaining} enrollment(s) left for the next run"
            )
        logger.info(
            f"Batch done: processed={report.processed} succeeded={report.succeeded} "
            f"failed={report.failed} skipped={report.skipped} remaining={report.remaining} "
            f"in {report.duration_ms}ms"
        )
        return report

    @staticmethod
    def _tally(report: BatchReport, result: ProcessResult) -> None:
        if result.outcome == "skipped":
            report.skipped += 1
        elif result.succeeded:
            report.succeeded += 1
        else:
            report.failed += 1
            report.errors.append(
                BatchError(
                    enrollment_id=result.enrollment_id,
                    error=result.error or result.outcome,
                )
            )

    async def health(self, now: Optional[datetime] = None) -> HealthStats:
        now = now or self._clock()
        return HealthStats(
            status="ok",
            timestamp=now,
            pending_enrollments=await self._repository.count_enrollments(
                "active", due_before=now
            ),
            active_enrollments=await self._repository.count_enrollments("active"),
            active_workflows=await self._repository.count_workflows("active"),
        )
