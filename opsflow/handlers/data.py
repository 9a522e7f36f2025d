"""Business data handlers: the reserved read-only query and field writes."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from ..constants import DATA_QUERY_ACTION
from ..records import RecordStore
from ..registry.models import HandlerContext

SET_FIELDS_ACTION = "records.set_fields"


def _as_key(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class DataQueryInput(BaseModel):
    target_type: str = Field(min_length=1)
    target_id: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(default=100, ge=1, le=1000)

    coerce_target_id = field_validator("target_id", mode="before")(_as_key)


class SetFieldsInput(BaseModel):
    target_type: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    fields: Dict[str, Any]

    coerce_target_id = field_validator("target_id", mode="before")(_as_key)


class DataQueryHandler:
    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def __call__(self, context: HandlerContext, request: DataQueryInput) -> Dict[str, Any]:
        if request.target_id is not None:
            record = await self._records.get(
                context.organization_id, request.target_type, request.target_id
            )
            found = [record] if record and all(
                record.fields.get(k) == v for k, v in request.filters.items()
            ) else []
        else:
            found = await self._records.query(
                context.organization_id, request.target_type, request.filters, request.limit
            )
        records = [record.as_dict() for record in found]
        return {"records": records, "count": len(records)}


class SetFieldsHandler:
    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def __call__(self, context: HandlerContext, request: SetFieldsInput) -> Dict[str, Any]:
        record = await self._records.upsert_fields(
            context.organization_id,
            request.target_type,
            request.target_id,
            request.fields,
            run_id=context.run_id,
        )
        return {"target_type": record.target_type, "target_id": record.target_id, "fields": record.fields}


__all__ = [
    "DATA_QUERY_ACTION",
    "SET_FIELDS_ACTION",
    "DataQueryHandler",
    "DataQueryInput",
    "SetFieldsHandler",
    "SetFieldsInput",
]
