"""Contact store abstraction used by conditions and action steps."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

# Contact columns that are updated in place; anything else lives in
# ``custom_fields``.
STANDARD_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "email",
        "phone",
        "company_name",
        "job_title",
        "type",
        "status",
        "source",
        "address_line1",
        "address_line2",
        "city",
        "state",
        "zip_code",
        "country",
        "assigned_to",
    }
)


def read_field(contact: Dict[str, Any], field: str) -> Any:
    if field in STANDARD_FIELDS:
        return contact.get(field)
    return (contact.get("custom_fields") or {}).get(field)


def write_field(contact: Dict[str, Any], field: str, value: Any) -> Any:
    """Set ``field`` on ``contact`` and return the previous value."""
    old = read_field(contact, field)
    if field in STANDARD_FIELDS:
        contact[field] = value
    else:
        custom = dict(contact.get("custom_fields") or {})
        custom[field] = value
        contact["custom_fields"] = custom
    return old


def normalize_contact(contact: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(contact)
    data.setdefault("tags", [])
    data.setdefault("custom_fields", {})
    return data


class ContactStore(Protocol):
    """Protocol for reading and mutating CRM contact data."""

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        """Return a snapshot of the contact's fields."""

    async def save_contact(self, contact: Dict[str, Any]) -> None:
        """Insert or replace a contact."""

    async def add_tags(self, contact_id: str, tag_ids: List[str]) -> List[str]:
        """Add tags and return the ones that were not present before."""

    async def remove_tags(self, contact_id: str, tag_ids: List[str]) -> List[str]:
        """Remove tags and return the ones that were actually removed."""

    async def update_field(self, contact_id: str, field: str, value: Any) -> Any:
        """Update a standard or custom field and return the old value."""

    async def create_record(
        self, kind: str, contact_id: str, data: Dict[str, Any]
    ) -> str:
        """Persist a task, deal or notification linked to the contact."""

    async def list_records(
        self, kind: str, contact_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Return records of ``kind``, optionally only for one contact."""
