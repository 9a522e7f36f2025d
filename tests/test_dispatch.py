"""Tests for webhook ingestion and manual triggers."""

import json

import pytest

from opsflow.config import WebhookConfig
from opsflow.contracts import RunStatus, TriggerType
from opsflow.dispatch import WorkflowDispatcher, external_event_id, parse_payload
from opsflow.errors import InvalidPayload, WorkflowDisabled, WorkflowNotFound
from opsflow.security import sign_headers


@pytest.mark.asyncio
async def test_repeated_delivery_creates_one_run(repository, transport, dispatcher, make_definition):
    definition = make_definition()
    await repository.save_definition(definition)
    payload = {"id": "evt-1", "customerId": 42}

    first = await dispatcher.ingest("org-1", "ticket-created", payload)
    second = await dispatcher.ingest("org-1", "ticket-created", payload)

    assert first.accepted and first.status_code == 202 and not first.duplicate
    assert second.duplicate
    assert second.run_id == first.run_id
    assert transport.pending("opsflow.runs") == 1

    runs = await repository.list_runs(definition.id)
    assert len(runs) == 1
    run = runs[0]
    assert run.status == RunStatus.PENDING
    assert run.trigger_kind == TriggerType.WEBHOOK
    assert run.trigger_source == "evt-1"
    assert run.context == {"trigger": payload}

    event = await repository.get_event(definition.id, "evt-1")
    assert event.processed
    assert event.verified
    assert event.produced_run_id == first.run_id


@pytest.mark.asyncio
async def test_ping_is_acknowledged_without_a_run(repository, dispatcher, make_definition):
    definition = make_definition()
    await repository.save_definition(definition)

    result = await dispatcher.ingest("org-1", "ticket-created", {"type": "ping"})
    assert result.status_code == 200
    assert result.run_id is None
    assert await repository.list_runs(definition.id) == []


@pytest.mark.asyncio
async def test_unknown_or_disabled_trigger_is_not_found(repository, dispatcher, make_definition):
    result = await dispatcher.ingest("org-1", "ticket-created", {"id": "evt-1"})
    assert result.status_code == 404

    await repository.save_definition(make_definition(is_enabled=False))
    result = await dispatcher.ingest("org-1", "ticket-created", {"id": "evt-1"})
    assert result.status_code == 404
    assert not result.accepted

    # trigger keys are scoped to their organization
    result = await dispatcher.ingest("org-2", "ticket-created", {"id": "evt-1"})
    assert result.status_code == 404


@pytest.mark.asyncio
async def test_undecodable_body_is_rejected(repository, dispatcher, make_definition):
    definition = make_definition()
    await repository.save_definition(definition)
    result = await dispatcher.ingest("org-1", "ticket-created", b"{not json")
    assert result.status_code == 400
    assert await repository.list_runs(definition.id) == []


@pytest.mark.asyncio
async def test_form_encoded_delivery(repository, dispatcher, make_definition):
    definition = make_definition()
    await repository.save_definition(definition)
    result = await dispatcher.ingest(
        "org-1",
        "ticket-created",
        b"id=77&customer=acme&note=",
        {"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert result.status_code == 202
    run = await repository.get_run(result.run_id)
    assert run.context["trigger"] == {"id": "77", "customer": "acme", "note": ""}


@pytest.mark.asyncio
async def test_signed_webhook_rejects_then_accepts(repository, dispatcher, make_definition):
    definition = make_definition(
        trigger_config={"type": "webhook", "trigger_key": "ticket-created", "secret": "s3cret"}
    )
    await repository.save_definition(definition)
    body = json.dumps({"id": "evt-9", "customerId": 1}).encode()

    rejected = await dispatcher.ingest("org-1", "ticket-created", body, {"X-Signature": "sha256=bad"})
    assert rejected.status_code == 401
    assert rejected.run_id is None
    event = await repository.get_event(definition.id, "evt-9")
    assert event is not None and not event.verified
    assert await repository.list_runs(definition.id) == []

    accepted = await dispatcher.ingest(
        "org-1", "ticket-created", body, sign_headers("s3cret", body)
    )
    assert accepted.status_code == 202
    assert not accepted.duplicate
    event = await repository.get_event(definition.id, "evt-9")
    assert event.verified
    assert event.error_message is None
    assert event.produced_run_id == accepted.run_id


@pytest.mark.asyncio
async def test_garbled_signature_header_is_unauthorized(repository, dispatcher, make_definition):
    definition = make_definition(
        trigger_config={"type": "webhook", "trigger_key": "ticket-created", "secret": "s3cret"}
    )
    await repository.save_definition(definition)

    result = await dispatcher.ingest(
        "org-1", "ticket-created", {"id": "evt-10"}, {"X-Signature": "sha256=\u00e9\u00e9"}
    )
    assert result.status_code == 401
    event = await repository.get_event(definition.id, "evt-10")
    assert not event.verified


@pytest.mark.asyncio
async def test_required_secret(repository, make_definition):
    await repository.save_definition(make_definition())
    dispatcher = WorkflowDispatcher(repository, webhooks=WebhookConfig(require_secret=True))
    result = await dispatcher.ingest("org-1", "ticket-created", {"id": "evt-1"})
    assert result.status_code == 401


@pytest.mark.asyncio
async def test_deliveries_without_ids_deduplicate_on_body(repository, dispatcher, make_definition):
    definition = make_definition()
    await repository.save_definition(definition)
    body = b'{"customerId": 5}'

    first = await dispatcher.ingest("org-1", "ticket-created", body)
    second = await dispatcher.ingest("org-1", "ticket-created", body)
    assert second.duplicate
    assert first.event_id.startswith("sha256:")

    by_header = await dispatcher.ingest(
        "org-1", "ticket-created", body, {"X-Event-Id": "delivery-3"}
    )
    assert by_header.event_id == "delivery-3"
    assert len(await repository.list_runs(definition.id)) == 2


def test_parse_payload_accepts_decoded_values():
    payload, body = parse_payload({"a": 1}, {})
    assert payload == {"a": 1}
    assert body == b'{"a":1}'
    with pytest.raises(InvalidPayload):
        parse_payload(b"\xff\xfe", {})


def test_external_event_id_prefers_payload():
    assert external_event_id({"event_id": 12}, {"X-Event-Id": "h"}, b"", ["X-Event-Id"]) == "12"
    assert external_event_id({}, {"x-event-id": "h"}, b"", ["X-Event-Id"]) == "h"


@pytest.mark.asyncio
async def test_manual_trigger(repository, transport, dispatcher, make_definition, clock):
    definition = make_definition(
        trigger_type="manual", trigger_config={"type": "manual"}
    )
    await repository.save_definition(definition)

    first = await dispatcher.trigger_workflow(definition.id, {"reason": "audit"}, invoker_id="ops")
    second = await dispatcher.trigger_workflow(definition.id)
    assert first != second

    run = await repository.get_run(first)
    assert run.trigger_kind == TriggerType.MANUAL
    assert run.trigger_source == f"manual:ops:{clock.now.isoformat()}"
    assert run.context == {"trigger": {"reason": "audit"}}
    assert (await repository.get_run(second)).context == {"trigger": {}}
    assert transport.pending("opsflow.runs") == 2


@pytest.mark.asyncio
async def test_manual_trigger_errors(repository, dispatcher, make_definition):
    with pytest.raises(WorkflowNotFound):
        await dispatcher.trigger_workflow("missing")

    definition = make_definition(is_enabled=False)
    await repository.save_definition(definition)
    with pytest.raises(WorkflowDisabled):
        await dispatcher.trigger_workflow(definition.id)
