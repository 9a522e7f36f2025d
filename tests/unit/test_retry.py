"""Tests for retry decisions."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from opsflow.contracts import RetryPolicy, RunStatus, StepFailure, WorkflowRun
from opsflow.retry import PermanentFailure, RetryAfter, RetryController, compute_backoff, decide

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
TRANSIENT = StepFailure(kind="handler", message="503 from upstream", retryable=True)


def test_backoff_sequence_is_capped_and_then_permanent():
    policy = RetryPolicy(max_attempts=5, base_delay=1, backoff_multiplier=2, max_delay=30)
    delays = []
    attempts = 0
    for _ in range(5):
        decision = decide(TRANSIENT, attempts, policy)
        assert isinstance(decision, RetryAfter)
        delays.append(decision.delay)
        attempts = decision.attempt
    assert delays == [1, 2, 4, 8, 16]

    sixth = decide(TRANSIENT, attempts, policy)
    assert isinstance(sixth, PermanentFailure)
    assert sixth.exhausted


def test_backoff_respects_max_delay():
    policy = RetryPolicy(base_delay=10, backoff_multiplier=3, max_delay=60, max_attempts=10)
    assert [compute_backoff(policy, n) for n in range(4)] == [10, 30, 60, 60]


def test_non_retryable_is_permanent_regardless_of_attempts():
    failure = StepFailure(kind="handler", message="404", retryable=False)
    decision = decide(failure, 0, RetryPolicy())
    assert isinstance(decision, PermanentFailure)
    assert not decision.exhausted


def test_policy_rejects_max_below_base():
    with pytest.raises(ValidationError):
        RetryPolicy(base_delay=10, max_delay=5)


def _running_run() -> WorkflowRun:
    run = WorkflowRun(
        workflow_id="wf", organization_id="org", trigger_kind="webhook", trigger_source="evt"
    )
    run.transition(RunStatus.RUNNING)
    return run


def test_controller_schedules_retry():
    run = _running_run()
    RetryController().on_step_failure(run, "step2", TRANSIENT, RetryPolicy(), NOW)
    assert run.status == RunStatus.WAITING_RETRY
    assert run.attempt_count_for_current_step == 1
    assert run.next_retry_at == NOW + timedelta(seconds=1)
    assert run.failing_step_id == "step2"


def test_controller_fails_run_when_exhausted():
    run = _running_run()
    run.attempt_count_for_current_step = 3
    decision = RetryController().on_step_failure(
        run, "step2", TRANSIENT, RetryPolicy(max_attempts=3), NOW
    )
    assert isinstance(decision, PermanentFailure)
    assert run.status == RunStatus.FAILED
    assert run.completed_at == NOW
    assert "step2" in run.last_error and "4 attempt" in run.last_error
