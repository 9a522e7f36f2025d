"""Core data contracts for opsflow workflows, runs and inbound events."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .conditions import Condition
from .constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    TRIGGER_CONTEXT_KEY,
)
from .cron import parse_schedule
from .errors import DefinitionError, InvalidTransition
from .templating import find_references

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_RETRY = "waiting_retry"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Allowed status transitions; FAILED is reachable from every live state so
# that external cancellation can stop a run at any point before success.
TRANSITIONS: Dict[RunStatus, Set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.WAITING_RETRY, RunStatus.FAILED},
    RunStatus.WAITING_RETRY: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
}


# ---------------------------------------------------------------------------
# Definitions


class RetryPolicy(BaseModel):
    """Backoff policy applied to a failing step."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=0)
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0)
    backoff_multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise DefinitionError("retry policy max_delay must be >= base_delay")
        return self


class WebhookTriggerConfig(BaseModel):
    type: Literal["webhook"] = "webhook"
    trigger_key: str = Field(min_length=1)
    secret: Optional[str] = None
    signature_scheme: Literal["hmac-sha256", "hmac-sha1", "jwt"] = "hmac-sha256"


class ScheduleTriggerConfig(BaseModel):
    type: Literal["schedule"] = "schedule"
    expression: str

    @field_validator("expression")
    @classmethod
    def _parseable(cls, value: str) -> str:
        parse_schedule(value)
        return value


class ManualTriggerConfig(BaseModel):
    type: Literal["manual"] = "manual"


TriggerConfig = Annotated[
    Union[WebhookTriggerConfig, ScheduleTriggerConfig, ManualTriggerConfig],
    Field(discriminator="type"),
]


class _StepBase(BaseModel):
    id: str = Field(pattern=r"^[\w-]+$")
    order: int
    name: Optional[str] = None

    def references(self) -> Set[str]:
        """Context roots this step reads."""
        return set()


class ActionStep(_StepBase):
    """Invoke a registered action handler with a templated input."""

    kind: Literal["action"] = "action"
    action_key: str = Field(min_length=1)
    input_template: Dict[str, Any] = Field(default_factory=dict)

    def references(self) -> Set[str]:
        return find_references(self.input_template)


class DataQueryStep(_StepBase):
    """Read-only lookup against business data through the reserved query handler."""

    kind: Literal["data_query"] = "data_query"
    input_template: Dict[str, Any] = Field(default_factory=dict)

    def references(self) -> Set[str]:
        return find_references(self.input_template)


class ConditionStep(_StepBase):
    """Branch: continue when true, otherwise finish or jump to ``skip_to``."""

    kind: Literal["condition"] = "condition"
    condition: Condition
    skip_to: Optional[str] = None

    def references(self) -> Set[str]:
        return self.condition.roots()


class WaitStep(_StepBase):
    """Deliberate delay, in seconds, before the next step runs."""

    kind: Literal["wait"] = "wait"
    duration: float = Field(gt=0)


StepDefinition = Annotated[
    Union[ActionStep, DataQueryStep, ConditionStep, WaitStep],
    Field(discriminator="kind"),
]


class CompletionCallback(BaseModel):
    """Write-back of a successful run's context into a business record."""

    target_type: str = Field(min_length=1)
    target_id_expression: str = Field(min_length=1)
    field_mappings: Dict[str, Any] = Field(default_factory=dict)


def validate_steps(steps: List[Any]) -> None:
    """Check ids, orders and that references only point at earlier steps.

    Raises:
        DefinitionError: On duplicates, forward/self references or a bad
            ``skip_to`` target.
    """
    seen_ids: Set[str] = set()
    seen_orders: Set[int] = set()
    for step in steps:
        if step.id == TRIGGER_CONTEXT_KEY:
            raise DefinitionError(f"'{TRIGGER_CONTEXT_KEY}' is reserved and cannot be a step id")
        if step.id in seen_ids:
            raise DefinitionError(f"Duplicate step id '{step.id}'")
        if step.order in seen_orders:
            raise DefinitionError(f"Duplicate step order {step.order}")
        seen_ids.add(step.id)
        seen_orders.add(step.order)

    orders = {step.id: step.order for step in steps}
    for step in steps:
        for root in step.references():
            if root == TRIGGER_CONTEXT_KEY:
                continue
            if root not in orders:
                raise DefinitionError(f"Step '{step.id}' references unknown step '{root}'")
            if orders[root] >= step.order:
                raise DefinitionError(
                    f"Step '{step.id}' references '{root}' which does not precede it"
                )
        skip_to = getattr(step, "skip_to", None)
        if skip_to is not None:
            if skip_to not in orders:
                raise DefinitionError(f"Step '{step.id}' skips to unknown step '{skip_to}'")
            if orders[skip_to] <= step.order:
                raise DefinitionError(f"Step '{step.id}' can only skip forward")


class WorkflowDefinition(BaseModel):
    """One automation owned by an organization."""

    id: str = Field(default_factory=_new_id)
    organization_id: str
    name: str
    trigger_type: TriggerType
    trigger_config: TriggerConfig
    steps: List[StepDefinition] = Field(default_factory=list)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    completion_callbacks: List[CompletionCallback] = Field(default_factory=list)
    is_enabled: bool = True
    last_successful_run_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_shape(self) -> "WorkflowDefinition":
        if self.trigger_config.type != self.trigger_type.value:
            raise DefinitionError(
                f"trigger_config of type '{self.trigger_config.type}' does not match "
                f"trigger_type '{self.trigger_type.value}'"
            )
        self.steps = sorted(self.steps, key=lambda step: step.order)
        validate_steps(self.steps)
        return self

    @property
    def trigger_key(self) -> Optional[str]:
        if isinstance(self.trigger_config, WebhookTriggerConfig):
            return self.trigger_config.trigger_key
        return None

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise KeyError(step_id)


# ---------------------------------------------------------------------------
# Runs


class StepFailure(BaseModel):
    """Classified failure value produced by a step."""

    kind: str
    message: str
    retryable: bool = False
    code: Optional[str] = None


class StepAttempt(BaseModel):
    """History entry for one attempt of one step."""

    step_id: str
    attempt: int
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    output: Any = None
    error: Optional[StepFailure] = None


class WorkflowRun(BaseModel):
    """One execution of a workflow definition."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    organization_id: str
    trigger_kind: TriggerType
    trigger_source: str
    dedup_key: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    current_step_index: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    attempt_count_for_current_step: int = 0
    next_retry_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failing_step_id: Optional[str] = None
    short_circuit_step_id: Optional[str] = None
    history: List[StepAttempt] = Field(default_factory=list)
    callbacks_applied: bool = False
    callback_error: Optional[str] = None
    version: int = 0

    def is_terminal(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    def is_due(self, now: datetime) -> bool:
        if self.status not in (RunStatus.PENDING, RunStatus.WAITING_RETRY):
            return False
        return self.next_retry_at is None or self.next_retry_at <= now

    def transition(self, target: RunStatus) -> None:
        """Move to ``target`` or raise :class:`InvalidTransition`."""
        if target not in TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status.value, target.value)
        self.status = target

    def record_output(self, step_id: str, output: Any) -> None:
        """Append a step output to the context; entries are write-once."""
        if step_id in self.context:
            raise ValueError(f"Context entry '{step_id}' of run {self.id} is already written")
        self.context[step_id] = output

    def advance(self, index: Optional[int] = None) -> None:
        self.current_step_index = self.current_step_index + 1 if index is None else index
        self.attempt_count_for_current_step = 0


class RunView(BaseModel):
    """Read-only projection of a run for inspection tooling."""

    id: str
    workflow_id: str
    status: RunStatus
    trigger_source: str
    context: Dict[str, Any]
    history: List[StepAttempt]
    current_step_index: int
    attempt_count_for_current_step: int
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failing_step_id: Optional[str] = None
    callback_error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: WorkflowRun) -> "RunView":
        return cls(
            id=run.id,
            workflow_id=run.workflow_id,
            status=run.status,
            trigger_source=run.trigger_source,
            context=run.context,
            history=run.history,
            current_step_index=run.current_step_index,
            attempt_count_for_current_step=run.attempt_count_for_current_step,
            next_retry_at=run.next_retry_at,
            last_error=run.last_error,
            failing_step_id=run.failing_step_id,
            callback_error=run.callback_error,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )


# ---------------------------------------------------------------------------
# Inbound events and transport messages


class InboundEvent(BaseModel):
    """Ingestion record of one webhook delivery."""

    id: str = Field(default_factory=_new_id)
    organization_id: str
    workflow_id: str
    trigger_key: str
    external_event_id: str
    payload: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)
    verified: bool = False
    processed: bool = False
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    produced_run_id: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class RunMessage(BaseModel):
    """Envelope announcing that a run is ready to be executed."""

    message_id: str = Field(default_factory=_new_id)
    run_id: str
    reason: str = "created"
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "RunMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
