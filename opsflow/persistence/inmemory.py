"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional, Tuple

from ..contracts import InboundEvent, TriggerType, WorkflowDefinition, WorkflowRun
from ..errors import ConcurrentModification, DefinitionError
from .repository import RunClaimMixin, WorkflowRepository, keep_engine_fields


class InMemoryWorkflowRepository(RunClaimMixin, WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored objects are copied on the way
    in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._run_keys: Dict[Tuple[str, str], str] = {}
        self._events: Dict[Tuple[str, str], InboundEvent] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            key = definition.trigger_key
            if key is not None:
                for other in self._definitions.values():
                    if (
                        other.id != definition.id
                        and other.organization_id == definition.organization_id
                        and other.trigger_key == key
                    ):
                        raise DefinitionError(
                            f"Trigger key '{key}' is already used in organization "
                            f"{definition.organization_id}"
                        )
            stored = keep_engine_fields(definition, self._definitions.get(definition.id))
            self._definitions[definition.id] = stored.model_copy(deep=True)

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(workflow_id)
        return definition.model_copy(deep=True) if definition else None

    async def find_by_trigger_key(
        self, organization_id: str, trigger_key: str
    ) -> WorkflowDefinition | None:
        for definition in self._definitions.values():
            if definition.organization_id == organization_id and definition.trigger_key == trigger_key:
                return definition.model_copy(deep=True)
        return None

    async def list_definitions(
        self, trigger_type: TriggerType | None = None, enabled_only: bool = False
    ) -> list[WorkflowDefinition]:
        return [
            d.model_copy(deep=True)
            for d in self._definitions.values()
            if (trigger_type is None or d.trigger_type == trigger_type)
            and (not enabled_only or d.is_enabled)
        ]

    async def mark_workflow_succeeded(self, workflow_id: str, at: datetime) -> None:
        async with self._lock:
            definition = self._definitions.get(workflow_id)
            if definition is None:
                return
            if definition.last_successful_run_at is None or definition.last_successful_run_at < at:
                definition.last_successful_run_at = at

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        async with self._lock:
            if run.dedup_key is not None:
                existing_id = self._run_keys.get((run.workflow_id, run.dedup_key))
                if existing_id is not None:
                    return self._runs[existing_id].model_copy(deep=True), False
                self._run_keys[(run.workflow_id, run.dedup_key)] = run.id
            self._runs[run.id] = run.model_copy(deep=True)
        return run, True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def save_run(self, run: WorkflowRun) -> None:
        async with self._lock:
            stored = self._runs.get(run.id)
            if stored is None or stored.version != run.version:
                raise ConcurrentModification(run.id, run.version)
            run.version += 1
            self._runs[run.id] = run.model_copy(deep=True)

    async def list_due_runs(self, now: datetime, limit: int = 50) -> list[WorkflowRun]:
        due = [r for r in self._runs.values() if r.is_due(now)]
        due.sort(key=lambda r: (r.next_retry_at or r.created_at, r.created_at))
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        runs = [
            r for r in self._runs.values() if workflow_id is None or r.workflow_id == workflow_id
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs]

    async def latest_trigger_source(
        self, workflow_id: str, trigger_kind: TriggerType
    ) -> Optional[str]:
        sources = [
            r.trigger_source
            for r in self._runs.values()
            if r.workflow_id == workflow_id and r.trigger_kind == trigger_kind
        ]
        return max(sources) if sources else None

    # ------------------------------------------------------------------
    async def record_event(self, event: InboundEvent) -> tuple[InboundEvent, bool]:
        key = (event.workflow_id, event.external_event_id)
        async with self._lock:
            existing = self._events.get(key)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._events[key] = event.model_copy(deep=True)
        return event, True

    async def save_event(self, event: InboundEvent) -> None:
        async with self._lock:
            self._events[(event.workflow_id, event.external_event_id)] = event.model_copy(deep=True)

    async def get_event(self, workflow_id: str, external_event_id: str) -> InboundEvent | None:
        event = self._events.get((workflow_id, external_event_id))
        return event.model_copy(deep=True) if event else None
