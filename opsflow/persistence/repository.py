"""Repository abstraction for workflow definitions, runs and inbound events."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from ..contracts import InboundEvent, RunStatus, TriggerType, WorkflowDefinition, WorkflowRun
from ..errors import ConcurrentModification

logger = logging.getLogger(__name__)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    # definitions ------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a definition; trigger keys are unique per organization."""

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id."""

    async def find_by_trigger_key(
        self, organization_id: str, trigger_key: str
    ) -> WorkflowDefinition | None:
        """Resolve an organization-scoped webhook trigger key."""

    async def list_definitions(
        self, trigger_type: TriggerType | None = None, enabled_only: bool = False
    ) -> list[WorkflowDefinition]:
        """Return definitions, optionally filtered."""

    async def mark_workflow_succeeded(self, workflow_id: str, at: datetime) -> None:
        """Advance ``last_successful_run_at`` (never moves it backwards)."""

    # runs -------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        """Persist ``run`` unless one with the same (workflow_id, dedup_key) exists.

        Returns the stored run and whether it was created by this call.
        """

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def save_run(self, run: WorkflowRun) -> None:
        """Compare-and-swap ``run`` on its version; bumps ``run.version``.

        Raises:
            ConcurrentModification: If the stored version differs.
        """

    async def claim_run(self, run_id: str, now: datetime) -> WorkflowRun | None:
        """Atomically move a due run to ``running`` for a single executor."""

    async def list_due_runs(self, now: datetime, limit: int = 50) -> list[WorkflowRun]:
        """Runs that are pending or whose retry time has elapsed."""

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        """Return persisted runs, newest first."""

    async def latest_trigger_source(
        self, workflow_id: str, trigger_kind: TriggerType
    ) -> str | None:
        """Greatest trigger source recorded for a workflow and trigger kind."""

    # inbound events ---------------------------------------------------
    async def record_event(self, event: InboundEvent) -> tuple[InboundEvent, bool]:
        """Persist ``event`` unless (workflow_id, external_event_id) is already known."""

    async def save_event(self, event: InboundEvent) -> None:
        """Persist changes to an existing event."""

    async def get_event(
        self, workflow_id: str, external_event_id: str
    ) -> InboundEvent | None:
        """Look an event up by its dedup key."""


class RunClaimMixin:
    """``claim_run`` expressed through ``get_run`` and compare-and-swap ``save_run``."""

    async def claim_run(self, run_id: str, now: datetime) -> WorkflowRun | None:
        run = await self.get_run(run_id)  # type: ignore[attr-defined]
        if run is None or not run.is_due(now):
            return None
        run.transition(RunStatus.RUNNING)
        run.started_at = run.started_at or now
        run.next_retry_at = None
        try:
            await self.save_run(run)  # type: ignore[attr-defined]
        except ConcurrentModification:
            logger.info(f"Run {run_id} was claimed by another worker")
            return None
        return run


def keep_engine_fields(
    definition: WorkflowDefinition, stored: WorkflowDefinition | None
) -> WorkflowDefinition:
    """Copy of ``definition`` carrying the fields the engine owns from ``stored``.

    Editing or reloading a definition must not move its schedule anchor, so
    ``created_at`` and ``last_successful_run_at`` survive an upsert.
    """
    if stored is None:
        return definition
    return definition.model_copy(
        update={
            "created_at": stored.created_at,
            "last_successful_run_at": stored.last_successful_run_at
            or definition.last_successful_run_at,
        }
    )
