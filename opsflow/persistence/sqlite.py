"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..contracts import InboundEvent, TriggerType, WorkflowDefinition, WorkflowRun
from ..errors import ConcurrentModification, DefinitionError
from .repository import RunClaimMixin, WorkflowRepository, keep_engine_fields

T = TypeVar("T")

# Fixed-width UTC text so lexical comparison in SQL matches time order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


class SQLiteWorkflowRepository(RunClaimMixin, WorkflowRepository):
    """Persist workflow state using SQLite.

    Rows keep the full pydantic document in a ``data`` column next to the
    columns needed for lookups, uniqueness and compare-and-swap.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_key TEXT,
                is_enabled INTEGER NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (organization_id, trigger_key)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                dedup_key TEXT,
                trigger_kind TEXT NOT NULL,
                trigger_source TEXT NOT NULL,
                status TEXT NOT NULL,
                next_retry_at TEXT,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (workflow_id, dedup_key)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_runs_due ON workflow_runs (status, next_retry_at)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS inbound_events (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                external_event_id TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (workflow_id, external_event_id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # Definitions
    def _upsert_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("SELECT data FROM workflow_definitions WHERE id = ?", (definition.id,))
                row = cur.fetchone()
                stored = WorkflowDefinition.model_validate_json(row["data"]) if row else None
                definition = keep_engine_fields(definition, stored)
                cur.execute(
                    """
                    INSERT INTO workflow_definitions
                        (id, organization_id, trigger_type, trigger_key, is_enabled, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        organization_id = excluded.organization_id,
                        trigger_type = excluded.trigger_type,
                        trigger_key = excluded.trigger_key,
                        is_enabled = excluded.is_enabled,
                        data = excluded.data
                    """,
                    (
                        definition.id,
                        definition.organization_id,
                        definition.trigger_type.value,
                        definition.trigger_key,
                        int(definition.is_enabled),
                        definition.model_dump_json(),
                    ),
                )
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        try:
            await self._run(self._upsert_definition, definition)
        except sqlite3.IntegrityError as exc:
            raise DefinitionError(
                f"Trigger key '{definition.trigger_key}' is already used in organization "
                f"{definition.organization_id}"
            ) from exc

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await self._run(
            self._fetchone, "SELECT data FROM workflow_definitions WHERE id = ?", workflow_id
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def find_by_trigger_key(
        self, organization_id: str, trigger_key: str
    ) -> WorkflowDefinition | None:
        row = await self._run(
            self._fetchone,
            "SELECT data FROM workflow_definitions WHERE organization_id = ? AND trigger_key = ?",
            organization_id,
            trigger_key,
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def list_definitions(
        self, trigger_type: TriggerType | None = None, enabled_only: bool = False
    ) -> list[WorkflowDefinition]:
        query = "SELECT data FROM workflow_definitions WHERE 1 = 1"
        params: list[Any] = []
        if trigger_type is not None:
            query += " AND trigger_type = ?"
            params.append(trigger_type.value)
        if enabled_only:
            query += " AND is_enabled = 1"
        rows = await self._run(self._fetchall, query + " ORDER BY id", *params)
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    def _mark_succeeded(self, workflow_id: str, at: datetime) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT data FROM workflow_definitions WHERE id = ?", (workflow_id,))
            row = cur.fetchone()
            if row is None:
                return
            definition = WorkflowDefinition.model_validate_json(row["data"])
            previous = definition.last_successful_run_at
            if previous is not None and previous >= at:
                return
            definition.last_successful_run_at = at
            cur.execute(
                "UPDATE workflow_definitions SET data = ? WHERE id = ?",
                (definition.model_dump_json(), workflow_id),
            )
            self._conn.commit()

    async def mark_workflow_succeeded(self, workflow_id: str, at: datetime) -> None:
        await self._run(self._mark_succeeded, workflow_id, at)

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        inserted = await self._run(
            self._execute,
            """
            INSERT OR IGNORE INTO workflow_runs
                (id, workflow_id, dedup_key, trigger_kind, trigger_source, status,
                 next_retry_at, version, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            run.id,
            run.workflow_id,
            run.dedup_key,
            run.trigger_kind.value,
            run.trigger_source,
            run.status.value,
            _ts(run.next_retry_at),
            run.version,
            _ts(run.created_at),
            run.model_dump_json(),
        )
        if inserted:
            return run, True
        row = await self._run(
            self._fetchone,
            "SELECT data FROM workflow_runs WHERE workflow_id = ? AND dedup_key = ?",
            run.workflow_id,
            run.dedup_key,
        )
        if row is None:
            # id collision without a dedup match
            raise ConcurrentModification(run.id, run.version)
        return WorkflowRun.model_validate_json(row["data"]), False

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._run(self._fetchone, "SELECT data FROM workflow_runs WHERE id = ?", run_id)
        return WorkflowRun.model_validate_json(row["data"]) if row else None

    async def save_run(self, run: WorkflowRun) -> None:
        expected = run.version
        run.version = expected + 1
        updated = await self._run(
            self._execute,
            """
            UPDATE workflow_runs
            SET status = ?, next_retry_at = ?, version = ?, data = ?
            WHERE id = ? AND version = ?
            """,
            run.status.value,
            _ts(run.next_retry_at),
            run.version,
            run.model_dump_json(),
            run.id,
            expected,
        )
        if not updated:
            run.version = expected
            raise ConcurrentModification(run.id, expected)

    async def list_due_runs(self, now: datetime, limit: int = 50) -> list[WorkflowRun]:
        rows = await self._run(
            self._fetchall,
            """
            SELECT data FROM workflow_runs
            WHERE status IN ('pending', 'waiting_retry')
              AND (next_retry_at IS NULL OR next_retry_at <= ?)
            ORDER BY COALESCE(next_retry_at, created_at), created_at
            LIMIT ?
            """,
            _ts(now),
            limit,
        )
        return [WorkflowRun.model_validate_json(r["data"]) for r in rows]

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        if workflow_id is None:
            rows = await self._run(
                self._fetchall, "SELECT data FROM workflow_runs ORDER BY created_at DESC"
            )
        else:
            rows = await self._run(
                self._fetchall,
                "SELECT data FROM workflow_runs WHERE workflow_id = ? ORDER BY created_at DESC",
                workflow_id,
            )
        return [WorkflowRun.model_validate_json(r["data"]) for r in rows]

    async def latest_trigger_source(
        self, workflow_id: str, trigger_kind: TriggerType
    ) -> str | None:
        row = await self._run(
            self._fetchone,
            "SELECT MAX(trigger_source) AS source FROM workflow_runs WHERE workflow_id = ? AND trigger_kind = ?",
            workflow_id,
            trigger_kind.value,
        )
        return row["source"] if row else None

    # ------------------------------------------------------------------
    # Inbound events
    async def record_event(self, event: InboundEvent) -> tuple[InboundEvent, bool]:
        inserted = await self._run(
            self._execute,
            """
            INSERT OR IGNORE INTO inbound_events (id, workflow_id, external_event_id, data)
            VALUES (?, ?, ?, ?)
            """,
            event.id,
            event.workflow_id,
            event.external_event_id,
            event.model_dump_json(),
        )
        if inserted:
            return event, True
        existing = await self.get_event(event.workflow_id, event.external_event_id)
        if existing is None:
            raise DefinitionError(f"Inbound event id {event.id} collides with another event")
        return existing, False

    async def save_event(self, event: InboundEvent) -> None:
        await self._run(
            self._execute,
            "UPDATE inbound_events SET data = ? WHERE workflow_id = ? AND external_event_id = ?",
            event.model_dump_json(),
            event.workflow_id,
            event.external_event_id,
        )

    async def get_event(self, workflow_id: str, external_event_id: str) -> InboundEvent | None:
        row = await self._run(
            self._fetchone,
            "SELECT data FROM inbound_events WHERE workflow_id = ? AND external_event_id = ?",
            workflow_id,
            external_event_id,
        )
        return InboundEvent.model_validate_json(row["data"]) if row else None

    def close(self) -> None:
        self._conn.close()
