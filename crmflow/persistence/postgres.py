"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import asyncpg

from ..contracts import Enrollment, EnrollmentStatus
from ..models import Workflow, WorkflowStatus
from .repository import WorkflowCounter, WorkflowRepository

_ENROLLMENT_COLUMNS = (
    "id, workflow_id, workspace_id, contact_id, status, next_step_at, "
    "claim_token, claimed_until, data"
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1" or "INSERT 0 1"
    return int(status.split()[-1])


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows and enrollments using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT,
                enrolled_count INTEGER NOT NULL DEFAULT 0,
                completed_count INTEGER NOT NULL DEFAULT 0,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workspace_id TEXT,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_step_at TIMESTAMPTZ,
                claim_token TEXT,
                claimed_until TIMESTAMPTZ,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_due ON enrollments (status, next_step_at)"
        )

    @staticmethod
    def _workflow_from_row(row: asyncpg.Record) -> Workflow:
        wf = Workflow.model_validate_json(row["data"])
        wf.enrolled_count = row["enrolled_count"]
        wf.completed_count = row["completed_count"]
        return wf

    @staticmethod
    def _enrollment_from_row(row: asyncpg.Record) -> Enrollment:
        e = Enrollment.model_validate_json(row["data"])
        e.status = row["status"]
        e.next_step_at = row["next_step_at"]
        e.claim_token = row["claim_token"]
        e.claimed_until = row["claimed_until"]
        return e

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (id, workspace_id, status, trigger_type, enrolled_count, completed_count, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    workspace_id = EXCLUDED.workspace_id,
                    status = EXCLUDED.status,
                    trigger_type = EXCLUDED.trigger_type,
                    data = EXCLUDED.data
                """,
                workflow.id,
                workflow.workspace_id,
                workflow.status,
                workflow.trigger.type if workflow.trigger else None,
                workflow.enrolled_count,
                workflow.completed_count,
                workflow.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return self._workflow_from_row(row) if row else None

    async def list_workflows(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("workspace_id", workspace_id),
            ("status", status),
            ("trigger_type", trigger_type),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        query = "SELECT * FROM workflows"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._workflow_from_row(r) for r in rows]

    async def increment_counter(self, workflow_id: str, counter: WorkflowCounter) -> None:
        if counter not in ("enrolled_count", "completed_count"):
            raise ValueError(f"Unknown workflow counter: {counter}")
        conn = await self._connect()
        try:
            await conn.execute(
                f"UPDATE workflows SET {counter} = {counter} + 1 WHERE id = $1",
                workflow_id,
            )
        finally:
            await conn.close()

    async def count_workflows(self, status: WorkflowStatus) -> int:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM workflows WHERE status = $1", status
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        values = [
            enrollment.id,
            enrollment.workflow_id,
            enrollment.workspace_id,
            enrollment.contact_id,
            enrollment.status,
            _aware(enrollment.next_step_at),
            enrollment.claim_token,
            _aware(enrollment.claimed_until),
            enrollment.model_dump_json(),
        ]
        conn = await self._connect()
        try:
            async with conn.transaction():
                if exclusive:
                    # serialise concurrent enrolls of the same contact
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))",
                        f"{enrollment.workflow_id}:{enrollment.contact_id}",
                    )
                    status = await conn.execute(
                        f"""
                        INSERT INTO enrollments ({_ENROLLMENT_COLUMNS})
                        SELECT $1, $2, $3, $4, $5, $6, $7, $8, $9
                        WHERE NOT EXISTS (
                            SELECT 1 FROM enrollments
                            WHERE workflow_id = $2 AND contact_id = $4 AND status = 'active'
                        )
                        """,
                        *values,
                    )
                else:
                    status = await conn.execute(
                        f"INSERT INTO enrollments ({_ENROLLMENT_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                        *values,
                    )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = $1",
                enrollment_id,
            )
        finally:
            await conn.close()
        return self._enrollment_from_row(row) if row else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        contact_id: Optional[str] = None,
    ) -> List[Enrollment]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("workflow_id", workflow_id),
            ("status", status),
            ("contact_id", contact_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        query = f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._enrollment_from_row(r) for r in rows]

    async def list_due_enrollments(
        self, now: datetime, limit: int, workspace_id: Optional[str] = None
    ) -> List[Enrollment]:
        query = (
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments "
            "WHERE status = 'active' AND next_step_at IS NOT NULL AND next_step_at <= $1"
        )
        params: list[Any] = [_aware(now)]
        if workspace_id is not None:
            params.append(workspace_id)
            query += f" AND workspace_id = ${len(params)}"
        params.append(limit)
        query += f" ORDER BY next_step_at ASC LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._enrollment_from_row(r) for r in rows]

    async def claim_enrollment(
        self, enrollment_id: str, token: str, now: datetime, lease_until: datetime
    ) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE enrollments SET claim_token = $1, claimed_until = $2
                WHERE id = $3 AND status = 'active'
                  AND next_step_at IS NOT NULL AND next_step_at <= $4
                  AND (claimed_until IS NULL OR claimed_until < $4)
                RETURNING {_ENROLLMENT_COLUMNS}
                """,
                token,
                _aware(lease_until),
                enrollment_id,
                _aware(now),
            )
        finally:
            await conn.close()
        return self._enrollment_from_row(row) if row else None

    async def release_enrollment(self, enrollment: Enrollment, token: str) -> bool:
        stored = enrollment.model_copy(update={"claim_token": None, "claimed_until": None})
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE enrollments
                SET status = $1, next_step_at = $2, claim_token = NULL, claimed_until = NULL, data = $3
                WHERE id = $4 AND claim_token = $5 AND status = 'active'
                """,
                stored.status,
                _aware(stored.next_step_at),
                stored.model_dump_json(),
                enrollment.id,
                token,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def exit_enrollment(
        self, enrollment_id: str, reason: str, now: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = $1 AND status = 'active' FOR UPDATE",
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
                await conn.execute(
                    """
                    UPDATE enrollments
                    SET status = 'exited', next_step_at = NULL, claim_token = NULL, claimed_until = NULL, data = $1
                    WHERE id = $2
                    """,
                    e.model_dump_json(),
                    enrollment_id,
                )
                return True
        finally:
            await conn.close()

    async def count_enrollments(
        self, status: EnrollmentStatus, due_before: Optional[datetime] = None
    ) -> int:
        query = "SELECT COUNT(*) FROM enrollments WHERE status = $1"
        params: list[Any] = [status]
        if due_before is not None:
            params.append(_aware(due_before))
            query += " AND next_step_at IS NOT NULL AND next_step_at <= $2"
        conn = await self._connect()
        try:
            return await conn.fetchval(query, *params)
        finally:
            await conn.close()
