"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from ..contracts import Enrollment, EnrollmentStatus
from ..models import Workflow, WorkflowStatus
from .repository import WorkflowCounter, WorkflowRepository

_ENROLLMENT_COLUMNS = (
    "id, workflow_id, workspace_id, contact_id, status, next_step_at, "
    "claim_token, claimed_until, data"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so that timestamps compare lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows and enrollments using SQLite.

    Each record is kept as a JSON document in ``data``; the columns the runner
    filters on are duplicated next to it. Claim columns are authoritative over
    the document.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT,
                enrolled_count INTEGER NOT NULL DEFAULT 0,
                completed_count INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workspace_id TEXT,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_step_at TEXT,
                claim_token TEXT,
                claimed_until TEXT,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_due ON enrollments (status, next_step_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _workflow_from_row(row: sqlite3.Row) -> Workflow:
        wf = Workflow.model_validate_json(row["data"])
        wf.enrolled_count = row["enrolled_count"]
        wf.completed_count = row["completed_count"]
        return wf

    @staticmethod
    def _enrollment_from_row(row: sqlite3.Row) -> Enrollment:
        e = Enrollment.model_validate_json(row["data"])
        e.status = row["status"]
        e.next_step_at = _parse_ts(row["next_step_at"])
        e.claim_token = row["claim_token"]
        e.claimed_until = _parse_ts(row["claimed_until"])
        return e

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, workspace_id, status, trigger_type, enrolled_count, completed_count, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                workspace_id = excluded.workspace_id,
                status = excluded.status,
                trigger_type = excluded.trigger_type,
                data = excluded.data
            """,
            workflow.id,
            workflow.workspace_id,
            workflow.status,
            workflow.trigger.type if workflow.trigger else None,
            workflow.enrolled_count,
            workflow.completed_count,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflows WHERE id = ?", workflow_id
        )
        return self._workflow_from_row(row) if row else None

    async def list_workflows(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        clauses, params = [], []
        for column, value in (
            ("workspace_id", workspace_id),
            ("status", status),
            ("trigger_type", trigger_type),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        query = "SELECT * FROM workflows"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._workflow_from_row(r) for r in rows]

    async def increment_counter(self, workflow_id: str, counter: WorkflowCounter) -> None:
        if counter not in ("enrolled_count", "completed_count"):
            raise ValueError(f"Unknown workflow counter: {counter}")
        await asyncio.to_thread(
            self._execute,
            f"UPDATE workflows SET {counter} = {counter} + 1 WHERE id = ?",
            workflow_id,
        )

    async def count_workflows(self, status: WorkflowStatus) -> int:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT COUNT(*) AS n FROM workflows WHERE status = ?", status
        )
        return row["n"]

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        values = (
            enrollment.id,
            enrollment.workflow_id,
            enrollment.workspace_id,
            enrollment.contact_id,
            enrollment.status,
            _ts(enrollment.next_step_at),
            enrollment.claim_token,
            _ts(enrollment.claimed_until),
            enrollment.model_dump_json(),
        )
        if exclusive:
            query = f"""
                INSERT INTO enrollments ({_ENROLLMENT_COLUMNS})
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM enrollments
                    WHERE workflow_id = ? AND contact_id = ? AND status = 'active'
                )
            """
            values += (enrollment.workflow_id, enrollment.contact_id)
        else:
            query = f"INSERT INTO enrollments ({_ENROLLMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
        async with self._lock:
            inserted = await asyncio.to_thread(self._execute, query, *values)
        return inserted == 1

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = ?",
            enrollment_id,
        )
        return self._enrollment_from_row(row) if row else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        contact_id: Optional[str] = None,
    ) -> List[Enrollment]:
        clauses, params = [], []
        for column, value in (
            ("workflow_id", workflow_id),
            ("status", status),
            ("contact_id", contact_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        query = f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._enrollment_from_row(r) for r in rows]

    async def list_due_enrollments(
        self, now: datetime, limit: int, workspace_id: Optional[str] = None
    ) -> List[Enrollment]:
        query = (
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments "
            "WHERE status = 'active' AND next_step_at IS NOT NULL AND next_step_at <= ?"
        )
        params: list[Any] = [_ts(now)]
        if workspace_id is not None:
            query += " AND workspace_id = ?"
            params.append(workspace_id)
        query += " ORDER BY next_step_at ASC LIMIT ?"
        params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._enrollment_from_row(r) for r in rows]

    async def claim_enrollment(
        self, enrollment_id: str, token: str, now: datetime, lease_until: datetime
    ) -> Enrollment | None:
        async with self._lock:
            claimed = await asyncio.to_thread(
                self._execute,
                """
                UPDATE enrollments SET claim_token = ?, claimed_until = ?
                WHERE id = ? AND status = 'active'
                  AND next_step_at IS NOT NULL AND next_step_at <= ?
                  AND (claimed_until IS NULL OR claimed_until < ?)
                """,
                token,
                _ts(lease_until),
                enrollment_id,
                _ts(now),
                _ts(now),
            )
        if claimed != 1:
            return None
        return await self.get_enrollment(enrollment_id)

    async def release_enrollment(self, enrollment: Enrollment, token: str) -> bool:
        stored = enrollment.model_copy(update={"claim_token": None, "claimed_until": None})
        async with self._lock:
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE enrollments
                SET status = ?, next_step_at = ?, claim_token = NULL, claimed_until = NULL, data = ?
                WHERE id = ? AND claim_token = ? AND status = 'active'
                """,
                stored.status,
                _ts(stored.next_step_at),
                stored.model_dump_json(),
                enrollment.id,
                token,
            )
        return updated == 1

    async def exit_enrollment(
        self, enrollment_id: str, reason: str, now: datetime
    ) -> bool:
        async with self._lock:
            row = await asyncio.to_thread(
                self._fetchone,
                f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = ? AND status = 'active'",
                enrollment_id,
            )
            if row is None:
                return False
            e = self._enrollment_from_row(row).model_copy(
                update={
                    "status": "exited",
                    "exit_reason": reason,
                    "exited_at": now,
                    "next_step_at": None,
                    "claim_token": None,
                    "claimed_until": None,
                    "updated_at": now,
                }
            )
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE enrollments
                SET status = 'exited', next_step_at = NULL, claim_token = NULL, claimed_until = NULL, data = ?
                WHERE id = ? AND status = 'active'
                """,
                e.model_dump_json(),
                enrollment_id,
            )
        return updated == 1

    async def count_enrollments(
        self, status: EnrollmentStatus, due_before: Optional[datetime] = None
    ) -> int:
        query = "SELECT COUNT(*) AS n FROM enrollments WHERE status = ?"
        params: list[Any] = [status]
        if due_before is not None:
            query += " AND next_step_at IS NOT NULL AND next_step_at <= ?"
            params.append(_ts(due_before))
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return row["n"]
