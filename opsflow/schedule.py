"""Schedule runner: creates runs for due occurrences of scheduled workflows."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Callable, Deque, List, Optional

from pydantic import BaseModel, Field

from .config import SchedulerConfig
from .constants import RUNS_TOPIC, TRIGGER_CONTEXT_KEY
from .contracts import (
    ScheduleTriggerConfig,
    TriggerType,
    WorkflowDefinition,
    WorkflowRun,
    utcnow,
)
from .cron import canonical_timestamp, parse_schedule
from .dispatch import announce_run
from .errors import DefinitionError
from .persistence import WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class DueWorkflow(BaseModel):
    """A scheduled definition with at least one unfired occurrence."""

    definition: WorkflowDefinition
    occurrences: List[str] = Field(default_factory=list)
    run_ids: List[str] = Field(default_factory=list)
    skipped: int = 0
    first_skipped: Optional[str] = None
    last_skipped: Optional[str] = None


class ScheduleRunner:
    """Evaluates schedule-triggered definitions on a periodic tick.

    Each occurrence becomes at most one run: the run's dedup key is the
    canonical occurrence timestamp, so overlapping or repeated evaluations
    of the same window are idempotent.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: Optional[BaseTransport] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        topic: str = RUNS_TOPIC,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._topic = topic

    async def _anchor(self, definition: WorkflowDefinition) -> datetime:
        anchor = definition.last_successful_run_at or definition.created_at
        latest = await self._repository.latest_trigger_source(definition.id, TriggerType.SCHEDULE)
        if latest:
            fired = datetime.fromisoformat(latest)
            if fired > anchor:
                anchor = fired
        return anchor

    async def evaluate(self, now: Optional[datetime] = None) -> List[DueWorkflow]:
        """Create runs for every unfired occurrence up to ``now``."""
        now = now or self._clock()
        due: List[DueWorkflow] = []
        definitions = await self._repository.list_definitions(
            trigger_type=TriggerType.SCHEDULE, enabled_only=True
        )
        for definition in definitions:
            if not isinstance(definition.trigger_config, ScheduleTriggerConfig):
                continue
            try:
                result = await self._evaluate_definition(definition, now)
            except DefinitionError as exc:
                logger.error(f"Schedule of workflow {definition.id} cannot be evaluated: {exc}")
                continue
            if result is not None:
                due.append(result)
        return due

    async def _evaluate_definition(
        self, definition: WorkflowDefinition, now: datetime
    ) -> Optional[DueWorkflow]:
        expression = parse_schedule(definition.trigger_config.expression)
        anchor = await self._anchor(definition)

        # only the most recent catch_up_limit occurrences of a backlog run
        limit = self._config.catch_up_limit
        pending: Deque[str] = deque()
        result = DueWorkflow(definition=definition)
        for occurrence in expression.occurrences(anchor, now):
            pending.append(canonical_timestamp(occurrence))
            if len(pending) > limit:
                dropped = pending.popleft()
                result.skipped += 1
                result.first_skipped = result.first_skipped or dropped
                result.last_skipped = dropped

        if not pending:
            return None

        if result.skipped:
            logger.warning(
                f"Workflow {definition.id} skipped {result.skipped} missed occurrence(s) "
                f"from {result.first_skipped} to {result.last_skipped}; running the latest {limit}"
            )

        for occurrence in pending:
            run, created = await self._repository.create_run(
                WorkflowRun(
                    workflow_id=definition.id,
                    organization_id=definition.organization_id,
                    trigger_kind=TriggerType.SCHEDULE,
                    trigger_source=occurrence,
                    dedup_key=f"schedule:{occurrence}",
                    context={TRIGGER_CONTEXT_KEY: {"scheduled_at": occurrence}},
                    created_at=now,
                )
            )
            if not created:
                continue
            result.occurrences.append(occurrence)
            result.run_ids.append(run.id)
            logger.info(f"Created run {run.id} for workflow {definition.id} at {occurrence}")
            await announce_run(self._transport, run.id, "schedule", self._topic)

        if not result.occurrences and not result.skipped:
            return None
        return result

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``tick_interval`` seconds until ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Scheduler started, ticking every {self._config.tick_interval}s")
        while lifespan is None or loop.time() - start_time < lifespan:
            try:
                await self.evaluate()
            except Exception:
                logger.exception("Schedule tick failed")
            await asyncio.sleep(self._config.tick_interval)
