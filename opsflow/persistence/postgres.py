"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime

import asyncpg

from ..contracts import InboundEvent, TriggerType, WorkflowDefinition, WorkflowRun
from ..errors import ConcurrentModification, DefinitionError
from .repository import RunClaimMixin, WorkflowRepository


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresWorkflowRepository(RunClaimMixin, WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_key TEXT,
                is_enabled BOOLEAN NOT NULL,
                last_successful_run_at TIMESTAMPTZ,
                data JSONB NOT NULL,
                UNIQUE (organization_id, trigger_key)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                dedup_key TEXT,
                trigger_kind TEXT NOT NULL,
                trigger_source TEXT NOT NULL,
                status TEXT NOT NULL,
                next_retry_at TIMESTAMPTZ,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL,
                UNIQUE (workflow_id, dedup_key)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS inbound_events (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                external_event_id TEXT NOT NULL,
                data JSONB NOT NULL,
                UNIQUE (workflow_id, external_event_id)
            )
            """
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_definitions
                    (id, organization_id, trigger_type, trigger_key, is_enabled,
                     last_successful_run_at, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    organization_id = EXCLUDED.organization_id,
                    trigger_type = EXCLUDED.trigger_type,
                    trigger_key = EXCLUDED.trigger_key,
                    is_enabled = EXCLUDED.is_enabled,
                    last_successful_run_at = COALESCE(
                        workflow_definitions.last_successful_run_at,
                        EXCLUDED.last_successful_run_at
                    ),
                    data = jsonb_set(
                        EXCLUDED.data,
                        '{created_at}',
                        COALESCE(workflow_definitions.data->'created_at', EXCLUDED.data->'created_at')
                    )
                """,
                definition.id,
                definition.organization_id,
                definition.trigger_type.value,
                definition.trigger_key,
                definition.is_enabled,
                definition.last_successful_run_at,
                definition.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DefinitionError(
                f"Trigger key '{definition.trigger_key}' is already used in organization "
                f"{definition.organization_id}"
            ) from exc
        finally:
            await conn.close()

    def _definition(self, row: asyncpg.Record) -> WorkflowDefinition:
        definition = WorkflowDefinition.model_validate_json(row["data"])
        definition.last_successful_run_at = row["last_successful_run_at"]
        return definition

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data, last_successful_run_at FROM workflow_definitions WHERE id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        return self._definition(row) if row else None

    async def find_by_trigger_key(
        self, organization_id: str, trigger_key: str
    ) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT data, last_successful_run_at FROM workflow_definitions
                WHERE organization_id = $1 AND trigger_key = $2
                """,
                organization_id,
                trigger_key,
            )
        finally:
            await conn.close()
        return self._definition(row) if row else None

    async def list_definitions(
        self, trigger_type: TriggerType | None = None, enabled_only: bool = False
    ) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data, last_successful_run_at FROM workflow_definitions
                WHERE ($1::text IS NULL OR trigger_type = $1)
                  AND (NOT $2 OR is_enabled)
                ORDER BY id
                """,
                trigger_type.value if trigger_type else None,
                enabled_only,
            )
        finally:
            await conn.close()
        return [self._definition(r) for r in rows]

    async def mark_workflow_succeeded(self, workflow_id: str, at: datetime) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflow_definitions SET last_successful_run_at = $2
                WHERE id = $1
                  AND (last_successful_run_at IS NULL OR last_successful_run_at < $2)
                """,
                workflow_id,
                at,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO workflow_runs
                    (id, workflow_id, dedup_key, trigger_kind, trigger_source, status,
                     next_retry_at, version, created_at, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT DO NOTHING
                """,
                run.id,
                run.workflow_id,
                run.dedup_key,
                run.trigger_kind.value,
                run.trigger_source,
                run.status.value,
                run.next_retry_at,
                run.version,
                run.created_at,
                run.model_dump_json(),
            )
            if _affected(status):
                return run, True
            row = await conn.fetchrow(
                "SELECT data FROM workflow_runs WHERE workflow_id = $1 AND dedup_key = $2",
                run.workflow_id,
                run.dedup_key,
            )
        finally:
            await conn.close()
        if row is None:
            raise ConcurrentModification(run.id, run.version)
        return WorkflowRun.model_validate_json(row["data"]), False

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT data FROM workflow_runs WHERE id = $1", run_id)
        finally:
            await conn.close()
        return WorkflowRun.model_validate_json(row["data"]) if row else None

    async def save_run(self, run: WorkflowRun) -> None:
        expected = run.version
        run.version = expected + 1
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE workflow_runs
                SET status = $1, next_retry_at = $2, version = $3, data = $4
                WHERE id = $5 AND version = $6
                """,
                run.status.value,
                run.next_retry_at,
                run.version,
                run.model_dump_json(),
                run.id,
                expected,
            )
        finally:
            await conn.close()
        if not _affected(status):
            run.version = expected
            raise ConcurrentModification(run.id, expected)

    async def list_due_runs(self, now: datetime, limit: int = 50) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data FROM workflow_runs
                WHERE status IN ('pending', 'waiting_retry')
                  AND (next_retry_at IS NULL OR next_retry_at <= $1)
                ORDER BY COALESCE(next_retry_at, created_at), created_at
                LIMIT $2
                """,
                now,
                limit,
            )
        finally:
            await conn.close()
        return [WorkflowRun.model_validate_json(r["data"]) for r in rows]

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data FROM workflow_runs
                WHERE ($1::text IS NULL OR workflow_id = $1)
                ORDER BY created_at DESC
                """,
                workflow_id,
            )
        finally:
            await conn.close()
        return [WorkflowRun.model_validate_json(r["data"]) for r in rows]

    async def latest_trigger_source(
        self, workflow_id: str, trigger_kind: TriggerType
    ) -> str | None:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT MAX(trigger_source) FROM workflow_runs WHERE workflow_id = $1 AND trigger_kind = $2",
                workflow_id,
                trigger_kind.value,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def record_event(self, event: InboundEvent) -> tuple[InboundEvent, bool]:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO inbound_events (id, workflow_id, external_event_id, data)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (workflow_id, external_event_id) DO NOTHING
                """,
                event.id,
                event.workflow_id,
                event.external_event_id,
                event.model_dump_json(),
            )
            if _affected(status):
                return event, True
            row = await conn.fetchrow(
                "SELECT data FROM inbound_events WHERE workflow_id = $1 AND external_event_id = $2",
                event.workflow_id,
                event.external_event_id,
            )
        finally:
            await conn.close()
        return InboundEvent.model_validate_json(row["data"]), False

    async def save_event(self, event: InboundEvent) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE inbound_events SET data = $1 WHERE workflow_id = $2 AND external_event_id = $3",
                event.model_dump_json(),
                event.workflow_id,
                event.external_event_id,
            )
        finally:
            await conn.close()

    async def get_event(self, workflow_id: str, external_event_id: str) -> InboundEvent | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM inbound_events WHERE workflow_id = $1 AND external_event_id = $2",
                workflow_id,
                external_event_id,
            )
        finally:
            await conn.close()
        return InboundEvent.model_validate_json(row["data"]) if row else None
