"""End-to-end execution of webhook-triggered runs with an injected clock."""

from datetime import timedelta

import pytest

from opsflow.config import ExecutorConfig, OpsflowConfig
from opsflow.contracts import RunStatus, TriggerType, WorkflowRun
from opsflow.dispatch import WorkflowDispatcher
from opsflow.errors import HandlerError, RunNotFound
from opsflow.execute import RunExecutor
from opsflow.persistence import SQLiteWorkflowRepository

LOOKUP_STEP = {
    "id": "step1",
    "order": 1,
    "kind": "action",
    "action_key": "crm.get_customer",
    "input_template": {"customer_id": "{{trigger.customerId}}"},
}
SEND_STEP = {
    "id": "step2",
    "order": 2,
    "kind": "action",
    "action_key": "email.send",
    "input_template": {"to": "{{step1.email}}", "body": "Hello {{step1.name}}"},
}
WELCOME_CALLBACK = {
    "target_type": "customer",
    "target_id_expression": "{{trigger.customerId}}",
    "field_mappings": {"welcome_sent": "{{step2.sent}}"},
}


@pytest.fixture
def notify_definition(make_definition):
    def build(**overrides):
        data = {
            "id": "wf-notify",
            "steps": [LOOKUP_STEP, SEND_STEP],
            "retry_policy": {"max_attempts": 3, "base_delay": 1, "backoff_multiplier": 2, "max_delay": 60},
            "completion_callbacks": [WELCOME_CALLBACK],
        }
        data.update(overrides)
        return make_definition(**data)

    return build


class FlakyMailer:
    """Fails ``failures`` times, then sends."""

    def __init__(self, failures: int = 0, retryable: bool = True):
        self.failures = failures
        self.retryable = retryable
        self.calls = []

    async def __call__(self, context, data):
        self.calls.append((context.attempt, data))
        if len(self.calls) <= self.failures:
            raise HandlerError("smtp unavailable", retryable=self.retryable, code="smtp")
        return {"sent": True, "to": data["to"]}


@pytest.fixture
def crm_calls(registry):
    calls = []

    async def get_customer(context, data):
        calls.append(data)
        return {"name": "Acme", "email": "ops@acme.test"}

    registry.register("crm.get_customer", get_customer)
    return calls


async def _ingest(dispatcher, payload=None):
    result = await dispatcher.ingest(
        "org-1", "ticket-created", payload or {"id": "evt-1", "customerId": 42}
    )
    assert result.status_code == 202
    return result.run_id


@pytest.mark.asyncio
async def test_transient_failures_resume_without_rerunning_earlier_steps(
    repository, registry, records, dispatcher, executor, clock, crm_calls, notify_definition
):
    mailer = FlakyMailer(failures=2)
    registry.register("email.send", mailer)
    await repository.save_definition(notify_definition())
    run_id = await _ingest(dispatcher)

    run = await executor.process_run(run_id)
    assert run.status == RunStatus.WAITING_RETRY
    assert run.current_step_index == 1
    assert run.attempt_count_for_current_step == 1
    assert run.next_retry_at == clock.now + timedelta(seconds=1)
    assert run.failing_step_id == "step2"

    # not due yet
    assert await executor.process_run(run_id) is None

    clock.advance(1)
    run = await executor.process_run(run_id)
    assert run.status == RunStatus.WAITING_RETRY
    assert run.attempt_count_for_current_step == 2

    clock.advance(2)
    run = await executor.process_run(run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert run.completed_at == clock.now
    assert run.failing_step_id is None
    assert run.last_error is None

    assert crm_calls == [{"customer_id": 42}]
    assert [attempt for attempt, _ in mailer.calls] == [1, 2, 3]
    assert mailer.calls[-1][1] == {"to": "ops@acme.test", "body": "Hello Acme"}
    assert run.context == {
        "trigger": {"id": "evt-1", "customerId": 42},
        "step1": {"name": "Acme", "email": "ops@acme.test"},
        "step2": {"sent": True, "to": "ops@acme.test"},
    }
    assert [(h.step_id, h.status) for h in run.history] == [
        ("step1", "succeeded"),
        ("step2", "failed"),
        ("step2", "failed"),
        ("step2", "succeeded"),
    ]

    record = await records.get("org-1", "customer", "42")
    assert record.fields == {"welcome_sent": True}
    assert record.last_run_id == run_id
    assert run.callbacks_applied

    definition = await repository.get_definition("wf-notify")
    assert definition.last_successful_run_at == clock.now


@pytest.mark.asyncio
async def test_retries_exhausted_fail_the_run(
    registry, repository, dispatcher, executor, clock, crm_calls, notify_definition
):
    registry.register("email.send", FlakyMailer(failures=10))
    await repository.save_definition(notify_definition())
    run_id = await _ingest(dispatcher)

    delays = []
    run = await executor.process_run(run_id)
    while run.status == RunStatus.WAITING_RETRY:
        delay = (run.next_retry_at - clock.now).total_seconds()
        delays.append(delay)
        clock.advance(delay)
        run = await executor.process_run(run_id)

    assert delays == [1, 2, 4]
    assert run.status == RunStatus.FAILED
    assert run.failing_step_id == "step2"
    assert "4 attempt" in run.last_error
    assert len(crm_calls) == 1


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(
    registry, repository, dispatcher, executor, records, crm_calls, notify_definition
):
    mailer = FlakyMailer(failures=1, retryable=False)
    registry.register("email.send", mailer)
    await repository.save_definition(notify_definition())
    run = await executor.process_run(await _ingest(dispatcher))

    assert run.status == RunStatus.FAILED
    assert len(mailer.calls) == 1
    assert run.history[-1].error.code == "smtp"
    assert await records.get("org-1", "customer", "42") is None


@pytest.mark.asyncio
async def test_unresolvable_reference_fails_permanently(
    registry, repository, dispatcher, executor, crm_calls, notify_definition
):
    registry.register("email.send", FlakyMailer())
    send = {**SEND_STEP, "input_template": {"to": "{{step1.phone}}"}}
    await repository.save_definition(notify_definition(steps=[LOOKUP_STEP, send]))

    run = await executor.process_run(await _ingest(dispatcher))
    assert run.status == RunStatus.FAILED
    assert run.history[-1].error.kind == "template"
    assert "step1.phone" in run.last_error


@pytest.mark.asyncio
async def test_wait_step_suspends_the_run(
    repository, dispatcher, executor, clock, crm_calls, make_definition
):
    lookup = {**LOOKUP_STEP, "order": 2}
    definition = make_definition(
        steps=[{"id": "pause", "order": 1, "kind": "wait", "duration": 60}, lookup]
    )
    await repository.save_definition(definition)
    run_id = await _ingest(dispatcher)

    run = await executor.process_run(run_id)
    assert run.status == RunStatus.WAITING_RETRY
    assert run.context["pause"] == {"waited": 60}
    assert run.current_step_index == 1
    assert crm_calls == []

    clock.advance(59)
    assert await executor.process_run(run_id) is None
    clock.advance(1)
    run = await executor.process_run(run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert crm_calls == [{"customer_id": 42}]


@pytest.mark.asyncio
async def test_false_condition_finishes_early_without_callbacks(
    registry, repository, records, dispatcher, executor, clock, crm_calls, notify_definition
):
    mailer = FlakyMailer()
    registry.register("email.send", mailer)
    vip_only = {
        "id": "is-vip",
        "order": 2,
        "kind": "condition",
        "condition": {"field": "trigger.vip", "operator": "equals", "value": True},
    }
    definition = notify_definition(steps=[LOOKUP_STEP, vip_only, {**SEND_STEP, "order": 3}])
    await repository.save_definition(definition)

    run = await executor.process_run(await _ingest(dispatcher, {"id": "evt-2", "customerId": 7}))
    assert run.status == RunStatus.SUCCEEDED
    assert run.short_circuit_step_id == "is-vip"
    assert run.context["is-vip"] == {"matched": False}
    assert "step2" not in run.context
    assert mailer.calls == []
    assert not run.callbacks_applied
    assert await records.get("org-1", "customer", "7") is None
    assert (await repository.get_definition(definition.id)).last_successful_run_at == clock.now


@pytest.mark.asyncio
async def test_true_condition_continues(
    registry, repository, records, dispatcher, executor, crm_calls, notify_definition
):
    registry.register("email.send", FlakyMailer())
    vip_only = {
        "id": "is-vip",
        "order": 2,
        "kind": "condition",
        "condition": {"field": "trigger.vip", "operator": "equals", "value": True},
    }
    await repository.save_definition(
        notify_definition(steps=[LOOKUP_STEP, vip_only, {**SEND_STEP, "order": 3}])
    )

    payload = {"id": "evt-4", "customerId": 8, "vip": True}
    run = await executor.process_run(await _ingest(dispatcher, payload))
    assert run.status == RunStatus.SUCCEEDED
    assert run.context["is-vip"] == {"matched": True}
    assert run.callbacks_applied
    assert (await records.get("org-1", "customer", "8")).fields == {"welcome_sent": True}


@pytest.mark.asyncio
async def test_false_condition_skips_to_target(
    registry, repository, dispatcher, executor, crm_calls, make_definition
):
    mailer = FlakyMailer()
    registry.register("email.send", mailer)
    definition = make_definition(
        steps=[
            {
                "id": "only-tickets",
                "order": 1,
                "kind": "condition",
                "condition": {"field": "trigger.kind", "value": "ticket"},
                "skip_to": "lookup",
            },
            {
                "id": "mail",
                "order": 2,
                "kind": "action",
                "action_key": "email.send",
                "input_template": {"to": "support@example.com"},
            },
            {**LOOKUP_STEP, "id": "lookup", "order": 3},
        ]
    )
    await repository.save_definition(definition)

    payload = {"id": "evt-3", "kind": "lead", "customerId": 9}
    run = await executor.process_run(await _ingest(dispatcher, payload))
    assert run.status == RunStatus.SUCCEEDED
    assert mailer.calls == []
    assert "mail" not in run.context
    assert run.context["lookup"]["name"] == "Acme"
    assert run.short_circuit_step_id is None


@pytest.mark.asyncio
async def test_cancel_waiting_run(
    registry, repository, dispatcher, executor, clock, crm_calls, notify_definition
):
    registry.register("email.send", FlakyMailer(failures=5))
    await repository.save_definition(notify_definition())
    run_id = await _ingest(dispatcher)
    await executor.process_run(run_id)

    cancelled = await executor.cancel_run(run_id, "customer closed the ticket")
    assert cancelled.status == RunStatus.FAILED
    assert "customer closed the ticket" in cancelled.last_error

    clock.advance(60)
    assert await executor.process_run(run_id) is None
    # cancelling a finished run is a no-op
    assert (await executor.cancel_run(run_id)).status == RunStatus.FAILED

    with pytest.raises(RunNotFound):
        await executor.cancel_run("missing")


@pytest.mark.asyncio
async def test_cancel_during_execution_stops_before_next_step(
    registry, repository, dispatcher, executor, notify_definition
):
    mailer = FlakyMailer()

    async def cancelling_lookup(context, data):
        await executor.cancel_run(context.run_id, "operator stop")
        return {"name": "Acme", "email": "ops@acme.test"}

    registry.register("crm.get_customer", cancelling_lookup)
    registry.register("email.send", mailer)
    await repository.save_definition(notify_definition())

    run = await executor.process_run(await _ingest(dispatcher))
    assert run.status == RunStatus.FAILED
    assert "operator stop" in run.last_error
    assert mailer.calls == []


@pytest.mark.asyncio
async def test_run_of_deleted_workflow_fails(repository, executor):
    run, _ = await repository.create_run(
        WorkflowRun(
            workflow_id="gone",
            organization_id="org-1",
            trigger_kind=TriggerType.MANUAL,
            trigger_source="manual:ops",
        )
    )
    result = await executor.process_run(run.id)
    assert result.status == RunStatus.FAILED
    assert "no longer exists" in result.last_error


@pytest.mark.asyncio
async def test_unsaveable_step_output_fails_the_run(
    tmp_path, registry, clock, crm_calls, notify_definition
):
    class Opaque:
        pass

    async def send(context, data):
        return {"receipt": Opaque()}

    registry.register("email.send", send)
    repository = SQLiteWorkflowRepository(tmp_path / "runs.db")
    try:
        await repository.save_definition(notify_definition())
        dispatcher = WorkflowDispatcher(repository, clock=clock)
        executor = RunExecutor(repository, registry, config=OpsflowConfig(), clock=clock)

        run = await executor.process_run(await _ingest(dispatcher))
        assert run.status == RunStatus.FAILED
        assert run.failing_step_id == "step2"
        assert run.last_error.startswith("Unexpected error")

        stored = await repository.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.context["step1"] == {"name": "Acme", "email": "ops@acme.test"}
        assert "step2" not in stored.context
        assert await repository.list_due_runs(clock.now) == []
    finally:
        repository.close()


@pytest.mark.asyncio
async def test_get_run_view(registry, repository, dispatcher, executor, crm_calls, notify_definition):
    registry.register("email.send", FlakyMailer())
    await repository.save_definition(notify_definition())
    run_id = await _ingest(dispatcher)
    await executor.process_run(run_id)

    view = await executor.get_run(run_id)
    assert view.status == RunStatus.SUCCEEDED
    assert [h.step_id for h in view.history] == ["step1", "step2"]
    with pytest.raises(RunNotFound):
        await executor.get_run("missing")


@pytest.mark.asyncio
async def test_run_due_processes_pending_runs(
    registry, repository, dispatcher, executor, crm_calls, notify_definition
):
    registry.register("email.send", FlakyMailer())
    await repository.save_definition(notify_definition())
    first = await _ingest(dispatcher, {"id": "evt-a", "customerId": 1})
    second = await _ingest(dispatcher, {"id": "evt-b", "customerId": 2})

    processed = await executor.run_due()
    assert {run.id for run in processed} == {first, second}
    assert all(run.status == RunStatus.SUCCEEDED for run in processed)


@pytest.mark.asyncio
async def test_worker_pool_consumes_announced_runs(
    registry, repository, records, transport, dispatcher, clock, crm_calls, notify_definition
):
    registry.register("email.send", FlakyMailer())
    await repository.save_definition(notify_definition())
    run_id = await _ingest(dispatcher)
    assert transport.pending("opsflow.runs") == 1

    executor = RunExecutor(
        repository,
        registry,
        records=records,
        transport=transport,
        config=OpsflowConfig(executor=ExecutorConfig(workers=2, poll_interval=0.05)),
        clock=clock,
    )
    await executor.start(lifespan=0.3)

    run = await repository.get_run(run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert len(crm_calls) == 1
