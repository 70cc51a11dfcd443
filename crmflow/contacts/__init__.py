"""Contact data access for the workflow engine."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CrmflowConfig, load_config
from .base import STANDARD_FIELDS, ContactStore
from .inmemory import InMemoryContactStore
from .sqlite import SQLiteContactStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresContactStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresContactStore = None  # type: ignore

_store_instance: ContactStore | None = None


def get_contact_store(
    database_url: Optional[str] = None, config: Optional[CrmflowConfig] = None
) -> ContactStore:
    """Factory function to obtain a contact store.

    Uses the same database URL resolution as
    :func:`crmflow.persistence.get_repository`.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CRMFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _store_instance = InMemoryContactStore()
    elif database_url.startswith("sqlite://"):
        _store_instance = SQLiteContactStore(database_url.replace("sqlite://", "", 1))
    elif database_url.startswith(("postgres://", "postgresql://")):
        if PostgresContactStore is None:
            raise RuntimeError("Postgres support not available")
        _store_instance = PostgresContactStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")
    return _store_instance


__all__ = [
    "STANDARD_FIELDS",
    "ContactStore",
    "InMemoryContactStore",
    "SQLiteContactStore",
    "PostgresContactStore",
    "get_contact_store",
]
