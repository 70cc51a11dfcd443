"""SQLite implementation of the contact store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .base import ContactStore, normalize_contact, write_field


class SQLiteContactStore(ContactStore):
    """Persist contacts as JSON documents in SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                workspace_id TEXT,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS contact_records (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _load(self, contact_id: str) -> Optional[Dict[str, Any]]:
        cur = self._conn.cursor()
        cur.execute("SELECT data FROM contacts WHERE id = ?", (contact_id,))
        row = cur.fetchone()
        return json.loads(row["data"]) if row else None

    def _store(self, contact: Dict[str, Any]) -> None:
        cur = self._conn.cursor()
        cur.execute(
            "INSERT OR REPLACE INTO contacts (id, workspace_id, data) VALUES (?, ?, ?)",
            (contact["id"], contact.get("workspace_id"), json.dumps(contact)),
        )
        self._conn.commit()

    async def _mutate(self, contact_id: str, fn) -> Any:
        # read-modify-write under one lock so concurrent steps do not lose updates
        async with self._lock:
            contact = await asyncio.to_thread(self._load, contact_id)
            if contact is None:
                return None
            contact = normalize_contact(contact)
            result = fn(contact)
            await asyncio.to_thread(self._store, contact)
            return result

    # ------------------------------------------------------------------
    # Store API
    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        contact = await asyncio.to_thread(self._load, contact_id)
        return normalize_contact(contact) if contact else None

    async def save_contact(self, contact: Dict[str, Any]) -> None:
        async with self._lock:
            await asyncio.to_thread(self._store, normalize_contact(contact))

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

        def insert() -> None:
            cur = self._conn.cursor()
            cur.execute(
                "INSERT INTO contact_records (id, kind, contact_id, data, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    record_id,
                    kind,
                    contact_id,
                    json.dumps(data, default=str),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self._conn.commit()

        await asyncio.to_thread(insert)
        return record_id

    async def list_records(
        self, kind: str, contact_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        def fetch() -> List[sqlite3.Row]:
            cur = self._conn.cursor()
            if contact_id is None:
                cur.execute(
                    "SELECT id, kind, contact_id, data FROM contact_records WHERE kind = ? ORDER BY created_at",
                    (kind,),
                )
            else:
                cur.execute(
                    "SELECT id, kind, contact_id, data FROM contact_records WHERE kind = ? AND contact_id = ? ORDER BY created_at",
                    (kind, contact_id),
                )
            return cur.fetchall()

        rows = await asyncio.to_thread(fetch)
        return [
            {
                "id": r["id"],
                "kind": r["kind"],
                "contact_id": r["contact_id"],
                **json.loads(r["data"]),
            }
            for r in rows
        ]
