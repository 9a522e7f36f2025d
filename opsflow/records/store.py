"""Business record stores targeted by completion callbacks and data steps."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from .models import BusinessRecord, StoredRecord

logger = logging.getLogger(__name__)


def _matches(fields: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(fields.get(key) == value for key, value in filters.items())


class RecordStore(Protocol):
    """Protocol for business record backends."""

    async def get(
        self, organization_id: str, target_type: str, target_id: str
    ) -> StoredRecord | None:
        """Return one record by natural key."""

    async def query(
        self,
        organization_id: str,
        target_type: str,
        filters: Dict[str, Any] | None = None,
        limit: int = 100,
    ) -> list[StoredRecord]:
        """Return records of ``target_type`` whose fields equal ``filters``."""

    async def upsert_fields(
        self,
        organization_id: str,
        target_type: str,
        target_id: str,
        fields: Dict[str, Any],
        run_id: str | None = None,
    ) -> StoredRecord:
        """Set ``fields`` on the record, creating it when absent."""


class InMemoryRecordStore(RecordStore):
    """Keep business records in local memory."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str, str], StoredRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, organization_id, target_type, target_id):
        record = self._records.get((organization_id, target_type, str(target_id)))
        return record.model_copy(deep=True) if record else None

    async def query(self, organization_id, target_type, filters=None, limit=100):
        found: List[StoredRecord] = []
        for (org, kind, _), record in sorted(self._records.items()):
            if org == organization_id and kind == target_type and _matches(record.fields, filters or {}):
                found.append(record.model_copy(deep=True))
                if len(found) >= limit:
                    break
        return found

    async def upsert_fields(self, organization_id, target_type, target_id, fields, run_id=None):
        key = (organization_id, target_type, str(target_id))
        async with self._lock:
            existing = self._records.get(key)
            merged = {**(existing.fields if existing else {}), **fields}
            record = StoredRecord(
                organization_id=organization_id,
                target_type=target_type,
                target_id=str(target_id),
                fields=merged,
                updated_at=datetime.now(timezone.utc),
                last_run_id=run_id,
            )
            self._records[key] = record
        return record.model_copy(deep=True)


def _to_stored(row: BusinessRecord) -> StoredRecord:
    return StoredRecord(
        organization_id=row.organization_id,
        target_type=row.target_type,
        target_id=row.target_id,
        fields=dict(row.data or {}),
        updated_at=row.updated_at,
        last_run_id=row.last_run_id,
    )


class SQLRecordStore(RecordStore):
    """Business records persisted with SQLModel on an async SQLAlchemy engine."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def get(self, organization_id, target_type, target_id):
        async with self.session() as session:
            row = await session.get(
                BusinessRecord, (organization_id, target_type, str(target_id))
            )
            return _to_stored(row) if row else None

    async def query(self, organization_id, target_type, filters=None, limit=100):
        statement = (
            select(BusinessRecord)
            .where(BusinessRecord.organization_id == organization_id)
            .where(BusinessRecord.target_type == target_type)
            .order_by(BusinessRecord.target_id)
        )
        async with self.session() as session:
            rows = (await session.execute(statement)).scalars().all()
        found = [_to_stored(row) for row in rows if _matches(row.data or {}, filters or {})]
        return found[:limit]

    async def upsert_fields(self, organization_id, target_type, target_id, fields, run_id=None):
        try:
            return await self._upsert(organization_id, target_type, str(target_id), fields, run_id)
        except IntegrityError:
            # a concurrent writer inserted the row first; the second pass updates it
            logger.debug(f"Retrying upsert of {target_type}/{target_id} after insert race")
            return await self._upsert(organization_id, target_type, str(target_id), fields, run_id)

    async def _upsert(
        self,
        organization_id: str,
        target_type: str,
        target_id: str,
        fields: Dict[str, Any],
        run_id: Optional[str],
    ) -> StoredRecord:
        async with self.session() as session:
            row = await session.get(BusinessRecord, (organization_id, target_type, target_id))
            if row is None:
                row = BusinessRecord(
                    organization_id=organization_id,
                    target_type=target_type,
                    target_id=target_id,
                    data=dict(fields),
                    last_run_id=run_id,
                )
                session.add(row)
            else:
                row.data = {**(row.data or {}), **fields}
                row.updated_at = datetime.now(timezone.utc)
                row.last_run_id = run_id
            await session.commit()
            await session.refresh(row)
            return _to_stored(row)

    async def close(self) -> None:
        await self.engine.dispose()
