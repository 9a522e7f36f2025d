"""Completion callbacks: write a successful run's results into business records."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .contracts import CompletionCallback, WorkflowDefinition, WorkflowRun
from .errors import CallbackError, TemplateError
from .records import RecordStore
from .templating import resolve

logger = logging.getLogger(__name__)


class CallbackWrite(BaseModel):
    """One concrete write produced from a callback template."""

    target_type: str
    target_id: str
    fields: dict


class CallbackReport(BaseModel):
    """Result of applying every callback of a run."""

    applied: List[CallbackWrite] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def partially_applied(self) -> bool:
        return bool(self.applied) and bool(self.errors)

    def error_message(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


def render_callback(callback: CompletionCallback, context: dict) -> CallbackWrite:
    """Resolve a callback's target id and field mappings against ``context``.

    Raises:
        CallbackError: If a reference cannot be resolved or the id is empty.
    """
    try:
        target_id: Any = resolve(callback.target_id_expression, context)
        fields = resolve(callback.field_mappings, context)
    except TemplateError as exc:
        raise CallbackError(f"{callback.target_type}: {exc}") from exc
    if target_id is None or target_id == "":
        raise CallbackError(f"{callback.target_type}: target id resolved to an empty value")
    return CallbackWrite(target_type=callback.target_type, target_id=str(target_id), fields=fields)


class CompletionCallbackWriter:
    """Applies completion callbacks through set-by-natural-key upserts.

    Every write sets fields on a record addressed by (organization,
    target type, target id), so applying the same run twice converges on
    the same record state.
    """

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def apply(self, definition: WorkflowDefinition, run: WorkflowRun) -> CallbackReport:
        report = CallbackReport()
        for callback in definition.completion_callbacks:
            try:
                write = render_callback(callback, run.context)
                await self._records.upsert_fields(
                    run.organization_id,
                    write.target_type,
                    write.target_id,
                    write.fields,
                    run_id=run.id,
                )
            except CallbackError as exc:
                logger.error(f"Completion callback failed for run {run.id}: {exc}")
                report.errors.append(str(exc))
                continue
            except Exception as exc:
                logger.exception(
                    f"Completion callback write to {callback.target_type} failed for run {run.id}"
                )
                report.errors.append(f"{callback.target_type}: {type(exc).__name__}: {exc}")
                continue
            report.applied.append(write)
            logger.info(
                f"Run {run.id} set {sorted(write.fields)} on {write.target_type}/{write.target_id}"
            )
        return report
