"""In-memory implementation of the contact store."""

from __future__ import annotations

import copy
import uuid
from typing import Any, Dict, List, Optional

from .base import ContactStore, normalize_contact, write_field


class InMemoryContactStore(ContactStore):
    """Keep contacts and their records in local memory.

    Useful for tests or when no database is configured.
    """

    def __init__(self) -> None:
        self._contacts: Dict[str, Dict[str, Any]] = {}
        self._records: List[Dict[str, Any]] = []

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        contact = self._contacts.get(contact_id)
        return copy.deepcopy(contact) if contact else None

    async def save_contact(self, contact: Dict[str, Any]) -> None:
        data = normalize_contact(contact)
        self._contacts[data["id"]] = copy.deepcopy(data)

    async def add_tags(self, contact_id: str, tag_ids: List[str]) -> List[str]:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return []
        added = [t for t in tag_ids if t not in contact["tags"]]
        contact["tags"] = contact["tags"] + added
        return added

    async def remove_tags(self, contact_id: str, tag_ids: List[str]) -> List[str]:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return []
        removed = [t for t in tag_ids if t in contact["tags"]]
        contact["tags"] = [t for t in contact["tags"] if t not in tag_ids]
        return removed

    async def update_field(self, contact_id: str, field: str, value: Any) -> Any:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return None
        return write_field(contact, field, value)

    async def create_record(
        self, kind: str, contact_id: str, data: Dict[str, Any]
    ) -> str:
        record_id = str(uuid.uuid4())
        self._records.append(
            {"id": record_id, "kind": kind, "contact_id": contact_id, **data}
        )
        return record_id

    async def list_records(
        self, kind: str, contact_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return [
            dict(r)
            for r in self._records
            if r["kind"] == kind and (contact_id is None or r["contact_id"] == contact_id)
        ]
