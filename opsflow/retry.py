"""Retry decisions for failed steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from .contracts import RetryPolicy, RunStatus, StepFailure, WorkflowRun
from .errors import RetryExhausted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryAfter:
    delay: float
    attempt: int


@dataclass(frozen=True)
class PermanentFailure:
    reason: str
    exhausted: bool = False


RetryDecision = Union[RetryAfter, PermanentFailure]


def compute_backoff(policy: RetryPolicy, attempt_count: int) -> float:
    """Delay before the retry that follows ``attempt_count`` earlier retries."""
    delay = policy.base_delay * policy.backoff_multiplier ** attempt_count
    return min(delay, policy.max_delay)


def decide(failure: StepFailure, attempt_count: int, policy: RetryPolicy) -> RetryDecision:
    """Pure retry decision for one failure value."""
    if not failure.retryable:
        return PermanentFailure(reason=failure.message)
    if attempt_count < policy.max_attempts:
        return RetryAfter(delay=compute_backoff(policy, attempt_count), attempt=attempt_count + 1)
    return PermanentFailure(reason=failure.message, exhausted=True)


class RetryController:
    """Applies retry decisions to a run."""

    def on_step_failure(
        self,
        run: WorkflowRun,
        step_id: str,
        failure: StepFailure,
        policy: RetryPolicy,
        now: datetime,
    ) -> RetryDecision:
        decision = decide(failure, run.attempt_count_for_current_step, policy)
        run.failing_step_id = step_id
        if isinstance(decision, RetryAfter):
            run.attempt_count_for_current_step = decision.attempt
            run.next_retry_at = now + timedelta(seconds=decision.delay)
            run.last_error = failure.message
            run.transition(RunStatus.WAITING_RETRY)
            logger.warning(
                f"Step {step_id} of run {run.id} failed ({failure.kind}): {failure.message}; "
                f"retry {decision.attempt}/{policy.max_attempts} in {decision.delay:.1f}s"
            )
            return decision

        if decision.exhausted:
            run.last_error = str(
                RetryExhausted(step_id, run.attempt_count_for_current_step + 1, failure.message)
            )
        else:
            run.last_error = f"{failure.kind}: {failure.message}"
        run.next_retry_at = None
        run.completed_at = now
        run.transition(RunStatus.FAILED)
        logger.error(f"Run {run.id} failed permanently at step {step_id}: {run.last_error}")
        return decision
