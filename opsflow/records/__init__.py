"""Business record stores written by completion callbacks."""

from __future__ import annotations

from typing import Optional

from .models import BusinessRecord, StoredRecord
from .store import InMemoryRecordStore, RecordStore, SQLRecordStore


def get_record_store(records_url: Optional[str] = None) -> RecordStore:
    """Return a SQL-backed store for ``records_url`` or an in-memory one."""
    if not records_url:
        return InMemoryRecordStore()
    return SQLRecordStore(records_url)


__all__ = [
    "BusinessRecord",
    "StoredRecord",
    "RecordStore",
    "InMemoryRecordStore",
    "SQLRecordStore",
    "get_record_store",
]
