"""Run executor: drives workflow runs through their steps."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .callbacks import CallbackReport, CompletionCallbackWriter
from .config import ExecutorConfig, OpsflowConfig
from .constants import RUNS_TOPIC
from .contracts import (
    RunStatus,
    RunView,
    StepAttempt,
    WorkflowDefinition,
    WorkflowRun,
    utcnow,
)
from .dispatch import announce_run
from .errors import CallbackError, ConcurrentModification, RunNotFound
from .interpreter import (
    StepBranched,
    StepFailed,
    StepInterpreter,
    StepSuspended,
)
from .persistence import WorkflowRepository
from .records import InMemoryRecordStore, RecordStore
from .registry import ActionRegistry
from .retry import RetryController
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class RunExecutor:
    """Executes workflow runs handed over by the dispatcher or found due in the store.

    Each call to :meth:`process_run` claims the run with a compare-and-swap,
    so at most one executor drives a run at a time. The run is checkpointed
    after every step; a concurrent change such as a cancellation makes the
    next checkpoint fail and stops the executor before another step runs.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: ActionRegistry,
        records: Optional[RecordStore] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[OpsflowConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        topic: str = RUNS_TOPIC,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._config = config or OpsflowConfig()
        self._clock = clock
        self._topic = topic
        self._interpreter = StepInterpreter(registry)
        self._retry = RetryController()
        self._callbacks = CompletionCallbackWriter(records or InMemoryRecordStore())
        self._announced: Dict[str, Tuple[int, datetime]] = {}

    @property
    def settings(self) -> ExecutorConfig:
        return self._config.executor

    # ------------------------------------------------------------------
    # Driving a single run
    async def process_run(
        self, run_id: str, now: Optional[datetime] = None
    ) -> Optional[WorkflowRun]:
        """Drive one run to its next stopping point.

        Returns the resulting run, or ``None`` when the run was not due or
        another executor claimed it first.
        """
        clock = (lambda: now) if now is not None else self._clock
        run = await self._repository.claim_run(run_id, clock())
        if run is None:
            logger.info(f"Run {run_id} is not claimable; skipping")
            return None

        definition = await self._repository.get_definition(run.workflow_id)
        if definition is None:
            run.last_error = f"Workflow {run.workflow_id} no longer exists"
            run.completed_at = clock()
            run.transition(RunStatus.FAILED)
            await self._repository.save_run(run)
            logger.error(f"Run {run.id} failed: {run.last_error}")
            return run

        try:
            return await self._drive(definition, run, clock)
        except ConcurrentModification:
            logger.warning(f"Run {run_id} was changed by another writer; stopping execution")
            return await self._repository.get_run(run_id)
        except Exception as exc:
            logger.exception(f"Run {run_id} raised outside step handling")
            return await self._fail_claimed(definition, run_id, exc, clock())

    async def _fail_claimed(
        self, definition: WorkflowDefinition, run_id: str, exc: Exception, at: datetime
    ) -> Optional[WorkflowRun]:
        """Move a run left in ``running`` by an unexpected error to ``failed``.

        Works from the last checkpoint, so partial state of the interrupted
        step is discarded. A run already moved on by someone else is left alone.
        """
        run = await self._repository.get_run(run_id)
        if run is None or run.status != RunStatus.RUNNING:
            return run
        if run.current_step_index < len(definition.steps):
            run.failing_step_id = definition.steps[run.current_step_index].id
        run.last_error = f"Unexpected error: {type(exc).__name__}: {exc}"
        run.next_retry_at = None
        run.completed_at = at
        run.transition(RunStatus.FAILED)
        try:
            await self._repository.save_run(run)
        except ConcurrentModification:
            logger.warning(f"Run {run_id} changed while recording its failure")
            return await self._repository.get_run(run_id)
        logger.error(f"Run {run_id} failed: {run.last_error}")
        return run

    async def _drive(
        self,
        definition: WorkflowDefinition,
        run: WorkflowRun,
        clock: Callable[[], datetime],
    ) -> WorkflowRun:
        settings = self._config.settings_for(run.organization_id)
        steps = definition.steps

        while run.current_step_index < len(steps):
            step = steps[run.current_step_index]
            attempt = run.attempt_count_for_current_step + 1
            started_at = clock()
            logger.info(f"Run {run.id} executing step {step.id} ({step.kind}), attempt {attempt}")

            outcome = await self._interpreter.execute(definition, run, step, settings, started_at)
            finished_at = clock()

            if isinstance(outcome, StepFailed):
                run.history.append(
                    StepAttempt(
                        step_id=step.id,
                        attempt=attempt,
                        status="failed",
                        started_at=started_at,
                        finished_at=finished_at,
                        error=outcome.failure,
                    )
                )
                self._retry.on_step_failure(
                    run, step.id, outcome.failure, definition.retry_policy, finished_at
                )
                await self._repository.save_run(run)
                return run

            run.record_output(step.id, outcome.output)
            run.history.append(
                StepAttempt(
                    step_id=step.id,
                    attempt=attempt,
                    status="succeeded",
                    started_at=started_at,
                    finished_at=finished_at,
                    output=outcome.output,
                )
            )
            if run.failing_step_id == step.id:
                run.failing_step_id = None
                run.last_error = None
            logger.debug(f"Run {run.id} step {step.id} finished")

            if isinstance(outcome, StepSuspended):
                run.advance()
                run.next_retry_at = outcome.resume_at
                run.transition(RunStatus.WAITING_RETRY)
                await self._repository.save_run(run)
                logger.info(f"Run {run.id} waiting until {outcome.resume_at.isoformat()}")
                return run

            if isinstance(outcome, StepBranched):
                if outcome.skip_to_index is None:
                    run.short_circuit_step_id = step.id
                    run.advance(len(steps))
                    logger.info(f"Run {run.id} finished early at condition {step.id}")
                    return await self._complete(definition, run, finished_at)
                run.advance(outcome.skip_to_index)
                logger.info(f"Run {run.id} skipping to step {steps[outcome.skip_to_index].id}")
            else:
                run.advance()

            await self._repository.save_run(run)

        return await self._complete(definition, run, clock())

    async def _complete(
        self, definition: WorkflowDefinition, run: WorkflowRun, at: datetime
    ) -> WorkflowRun:
        run.completed_at = at
        run.next_retry_at = None
        run.transition(RunStatus.SUCCEEDED)
        await self._repository.save_run(run)
        await self._repository.mark_workflow_succeeded(definition.id, at)
        logger.info(f"Run {run.id} of workflow {definition.id} succeeded")

        if run.short_circuit_step_id is None and definition.completion_callbacks:
            await self._apply_callbacks(definition, run)
        return run

    async def _apply_callbacks(
        self, definition: WorkflowDefinition, run: WorkflowRun
    ) -> CallbackReport:
        report = await self._callbacks.apply(definition, run)
        run.callbacks_applied = report.ok
        run.callback_error = report.error_message()
        await self._repository.save_run(run)
        return report

    # ------------------------------------------------------------------
    # Operator actions
    async def cancel_run(self, run_id: str, reason: str = "cancelled") -> WorkflowRun:
        """Mark a live run failed; an executor holding it stops at its next checkpoint.

        Raises:
            RunNotFound: If the run does not exist.
        """
        for _ in range(3):
            run = await self._repository.get_run(run_id)
            if run is None:
                raise RunNotFound(run_id)
            if run.is_terminal():
                logger.info(f"Run {run_id} is already {run.status.value}; nothing to cancel")
                return run
            run.last_error = f"cancelled: {reason}"
            run.next_retry_at = None
            run.completed_at = self._clock()
            run.transition(RunStatus.FAILED)
            try:
                await self._repository.save_run(run)
            except ConcurrentModification:
                continue
            logger.warning(f"Run {run_id} cancelled: {reason}")
            return run
        raise ConcurrentModification(run_id, run.version)

    async def retry_callbacks(self, run_id: str) -> CallbackReport:
        """Re-apply the completion callbacks of a succeeded run.

        Raises:
            RunNotFound: If the run does not exist.
            CallbackError: If the run has not succeeded or its workflow is gone.
        """
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        if run.status != RunStatus.SUCCEEDED:
            raise CallbackError(f"Run {run_id} has not succeeded (status {run.status.value})")
        if run.short_circuit_step_id is not None:
            raise CallbackError(f"Run {run_id} finished early; callbacks do not apply")
        definition = await self._repository.get_definition(run.workflow_id)
        if definition is None:
            raise CallbackError(f"Workflow {run.workflow_id} no longer exists")
        report = await self._apply_callbacks(definition, run)
        if report.ok:
            logger.info(f"Callbacks of run {run_id} re-applied")
        return report

    async def get_run(self, run_id: str) -> RunView:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return RunView.from_run(run)

    # ------------------------------------------------------------------
    # Worker pool
    async def run_due(self, now: Optional[datetime] = None) -> List[WorkflowRun]:
        """Process every run that is due at ``now``, one after another."""
        now = now or self._clock()
        processed: List[WorkflowRun] = []
        for run in await self._repository.list_due_runs(now, self.settings.scan_batch):
            result = await self.process_run(run.id, now=now)
            if result is not None:
                processed.append(result)
        return processed

    async def _worker(self, index: int, lifespan: Optional[float]) -> None:
        assert self._transport is not None
        async for raw_message, message in self._transport.subscribe(self._topic, lifespan=lifespan):
            try:
                await self.process_run(message.run_id)
            except Exception:
                logger.exception(f"Worker {index} failed while processing run {message.run_id}")
            await self._transport.ack(raw_message)

    def _should_announce(self, run: WorkflowRun, now: datetime) -> bool:
        # a run is re-announced only after it changed or the last hand-off went stale
        stale_after = timedelta(seconds=self.settings.poll_interval * 30)
        previous = self._announced.get(run.id)
        if previous is not None and previous[0] == run.version and now - previous[1] < stale_after:
            return False
        self._announced[run.id] = (run.version, now)
        return True

    async def _scan_once(self, semaphore: Optional[asyncio.Semaphore]) -> int:
        now = self._clock()
        due = await self._repository.list_due_runs(now, self.settings.scan_batch)
        if self._transport is not None:
            count = 0
            for run in due:
                if self._should_announce(run, now):
                    await announce_run(self._transport, run.id, "due", self._topic)
                    count += 1
            return count

        async def _guarded(run_id: str) -> None:
            assert semaphore is not None
            async with semaphore:
                try:
                    await self.process_run(run_id)
                except Exception:
                    logger.exception(f"Failed while processing run {run_id}")

        await asyncio.gather(*(_guarded(run.id) for run in due))
        return len(due)

    async def _scan_loop(self, lifespan: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        semaphore = None if self._transport else asyncio.Semaphore(self.settings.workers)
        while lifespan is None or loop.time() - start_time < lifespan:
            found = await self._scan_once(semaphore)
            if found:
                logger.debug(f"Scan found {found} due run(s)")
            if len(self._announced) > 10 * self.settings.scan_batch:
                self._announced.clear()
            await asyncio.sleep(self.settings.poll_interval)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Run the worker pool and the due-run scan loop.

        With a transport, ``workers`` coroutines consume run messages while
        the scan loop re-announces runs whose retry time elapsed. Without one
        the scan loop executes due runs itself, ``workers`` at a time.
        """
        tasks = [asyncio.create_task(self._scan_loop(lifespan))]
        if self._transport is not None:
            tasks.extend(
                asyncio.create_task(self._worker(i, lifespan)) for i in range(self.settings.workers)
            )
        logger.info(f"Executor started with {self.settings.workers} worker(s)")
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            logger.info("Executor stopped")
