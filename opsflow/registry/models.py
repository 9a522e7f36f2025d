from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Type

from pydantic import BaseModel, Field

from ..config import OrganizationSettings
from ..contracts import StepFailure


class HandlerContext(BaseModel):
    """Explicit invocation context handed to every action handler."""

    organization_id: str
    workflow_id: str
    run_id: str
    step_id: str
    attempt: int = 1
    settings: OrganizationSettings = Field(default_factory=OrganizationSettings)
    last_successful_run_at: Optional[datetime] = None


ActionHandler = Callable[[HandlerContext, Any], Awaitable[Any]]


@dataclass(frozen=True)
class ActionDescriptor:
    """A registered capability reachable through an action key."""

    action_key: str
    handler: ActionHandler
    input_model: Optional[Type[BaseModel]] = None
    read_only: bool = False
    description: str = ""


class ActionOutcome(BaseModel):
    """Result of one handler invocation: an output or a classified failure."""

    output: Any = None
    failure: Optional[StepFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None
