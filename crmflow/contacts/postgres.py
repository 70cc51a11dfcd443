"""PostgreSQL implementation of the contact store."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import asyncpg

from .base import ContactStore, normalize_contact, write_field


class PostgresContactStore(ContactStore):
    """Persist contacts as JSONB documents in PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                workspace_id TEXT,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contact_records (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    async def _mutate(
        self, contact_id: str, fn: Callable[[Dict[str, Any]], Any]
    ) -> Any:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT data FROM contacts WHERE id = $1 FOR UPDATE", contact_id
                )
                if row is None:
                    return None
                contact = normalize_contact(json.loads(row["data"]))
                result = fn(contact)
                await conn.execute(
                    "UPDATE contacts SET data = $1 WHERE id = $2",
                    json.dumps(contact),
                    contact_id,
                )
                return result
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM contacts WHERE id = $1", contact_id
            )
        finally:
            await conn.close()
        return normalize_contact(json.loads(row["data"])) if row else None

    async def save_contact(self, contact: Dict[str, Any]) -> None:
        data = normalize_contact(contact)
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO contacts (id, workspace_id, data) VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE SET workspace_id = EXCLUDED.workspace_id, data = EXCLUDED.data
                """,
                data["id"],
                data.get("workspace_id"),
                json.dumps(data),
            )
        finally:
            await conn.close()

    async def add_tags(self, contact_id: str, tag_ids: List[str]) -> List[str]:
        def apply(contact: Dict[str, Any]) -> List[str]:
            added = [t for t in tag_ids if t not in contact["tags"]]
            contact["tags"] = contact["tags"] + added
            return added

        return await self._mutate(contact_id, apply) or []

    async def remove_tags(self, contact_id: str, tag_ids: List[str]) -> List[str]:
        def apply(contact: Dict[str, Any]) -> List[str]:
            removed = [t for t in tag_ids if t in contact["tags"]]
            contact["tags"] = [t for t in contact["tags"] if t not in tag_ids]
            return removed

        return await self._mutate(contact_id, apply) or []

    async def update_field(self, contact_id: str, field: str, value: Any) -> Any:
        return await self._mutate(
            contact_id, lambda contact: write_field(contact, field, value)
        )

    async def create_record(
        self, kind: str, contact_id: str, data: Dict[str, Any]
    ) -> str:
        record_id = str(uuid.uuid4())
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO contact_records (id, kind, contact_id, data, created_at) VALUES ($1, $2, $3, $4, $5)",
                record_id,
                kind,
                contact_id,
                json.dumps(data, default=str),
                datetime.now(timezone.utc),
            )
        finally:
            await conn.close()
        return record_id

    async def list_records(
        self, kind: str, contact_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        conn = await self._connect()
        try:
            if contact_id is None:
                rows = await conn.fetch(
                    "SELECT id, kind, contact_id, data FROM contact_records WHERE kind = $1 ORDER BY created_at",
                    kind,
                )
            else:
                rows = await conn.fetch(
                    "SELECT id, kind, contact_id, data FROM contact_records WHERE kind = $1 AND contact_id = $2 ORDER BY created_at",
                    kind,
                    contact_id,
                )
        finally:
            await conn.close()
        return [
            {
                "id": r["id"],
                "kind": r["kind"],
                "contact_id": r["contact_id"],
                **json.loads(r["data"]),
            }
            for r in rows
        ]
