from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BusinessRecord(SQLModel, table=True):
    """A business record addressed by its natural key."""

    __tablename__ = "business_records"

    organization_id: str = Field(primary_key=True)
    target_type: str = Field(primary_key=True)
    target_id: str = Field(primary_key=True)
    data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=_utcnow)
    last_run_id: Optional[str] = None


class StoredRecord(BaseModel):
    """Plain view of a business record returned by record stores."""

    organization_id: str
    target_type: str
    target_id: str
    fields: Dict[str, Any] = PydanticField(default_factory=dict)
    updated_at: Optional[datetime] = None
    last_run_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"target_type": self.target_type, "target_id": self.target_id, **self.fields}
