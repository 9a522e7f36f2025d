"""Interpretation of a single workflow step against a run context."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from .config import OrganizationSettings
from .conditions import evaluate
from .constants import DATA_QUERY_ACTION
from .contracts import (
    ActionStep,
    ConditionStep,
    DataQueryStep,
    StepFailure,
    WaitStep,
    WorkflowDefinition,
    WorkflowRun,
)
from .errors import TemplateError
from .registry import ActionRegistry, HandlerContext
from .templating import resolve

logger = logging.getLogger(__name__)


@dataclass
class StepCompleted:
    output: Any


@dataclass
class StepBranched:
    """A condition evaluated false.

    ``skip_to_index`` is the index execution jumps to, or ``None`` when the
    run should finish early.
    """

    output: Any
    skip_to_index: Optional[int]


@dataclass
class StepSuspended:
    output: Any
    resume_at: datetime


@dataclass
class StepFailed:
    failure: StepFailure


StepOutcome = Union[StepCompleted, StepBranched, StepSuspended, StepFailed]


class StepInterpreter:
    """Runs one step of a definition and reports the outcome as a value."""

    def __init__(self, registry: ActionRegistry) -> None:
        self._registry = registry

    async def execute(
        self,
        definition: WorkflowDefinition,
        run: WorkflowRun,
        step: Any,
        settings: OrganizationSettings,
        now: datetime,
    ) -> StepOutcome:
        if isinstance(step, ConditionStep):
            return self._condition(definition, run, step)
        if isinstance(step, WaitStep):
            return StepSuspended(
                output={"waited": step.duration},
                resume_at=now + timedelta(seconds=step.duration),
            )
        if isinstance(step, (ActionStep, DataQueryStep)):
            return await self._invoke(definition, run, step, settings)
        return StepFailed(
            StepFailure(kind="configuration", message=f"Unsupported step kind {type(step).__name__}")
        )

    def _condition(
        self, definition: WorkflowDefinition, run: WorkflowRun, step: ConditionStep
    ) -> StepOutcome:
        # missing fields read as None so operators like exists/is_empty work
        matched = evaluate(step.condition, run.context)
        output = {"matched": matched}
        logger.debug(f"Condition {step.id} of run {run.id} evaluated to {matched}")
        if matched:
            return StepCompleted(output)
        skip_to = definition.step_index(step.skip_to) if step.skip_to else None
        return StepBranched(output=output, skip_to_index=skip_to)

    async def _invoke(
        self,
        definition: WorkflowDefinition,
        run: WorkflowRun,
        step: Union[ActionStep, DataQueryStep],
        settings: OrganizationSettings,
    ) -> StepOutcome:
        try:
            data = resolve(step.input_template, run.context)
        except TemplateError as exc:
            return StepFailed(_template_failure(exc))

        read_only = isinstance(step, DataQueryStep)
        action_key = DATA_QUERY_ACTION if read_only else step.action_key
        context = HandlerContext(
            organization_id=run.organization_id,
            workflow_id=run.workflow_id,
            run_id=run.id,
            step_id=step.id,
            attempt=run.attempt_count_for_current_step + 1,
            settings=settings,
            last_successful_run_at=definition.last_successful_run_at,
        )
        outcome = await self._registry.invoke(
            action_key, context, data, require_read_only=read_only
        )
        if outcome.ok:
            return StepCompleted(outcome.output)
        return StepFailed(outcome.failure)


def _template_failure(exc: TemplateError) -> StepFailure:
    return StepFailure(kind="template", message=str(exc), retryable=False, code="template")
