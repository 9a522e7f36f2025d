"""Workflow dispatcher: turns webhook deliveries and manual calls into runs."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl

from pydantic import BaseModel

from .config import WebhookConfig
from .constants import RUNS_TOPIC, TRIGGER_CONTEXT_KEY
from .contracts import (
    InboundEvent,
    RunMessage,
    TriggerType,
    WebhookTriggerConfig,
    WorkflowDefinition,
    WorkflowRun,
    utcnow,
)
from .errors import (
    InvalidPayload,
    UnknownTrigger,
    VerificationFailed,
    WorkflowDisabled,
    WorkflowNotFound,
)
from .persistence import WorkflowRepository
from .security import verify_signature
from .transports import BaseTransport

logger = logging.getLogger(__name__)

RawPayload = Union[bytes, str, Dict[str, Any], list]


class IngestResult(BaseModel):
    """Outcome of one webhook delivery, shaped for an HTTP layer."""

    accepted: bool
    status_code: int
    run_id: Optional[str] = None
    event_id: Optional[str] = None
    duplicate: bool = False
    reason: Optional[str] = None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def parse_payload(raw: RawPayload, headers: Mapping[str, str]) -> tuple[Any, bytes]:
    """Decode a delivery into (payload, raw body bytes).

    Form-encoded bodies become a flat dict; everything else must be JSON.

    Raises:
        InvalidPayload: If the body cannot be decoded.
    """
    if isinstance(raw, (dict, list)):
        return raw, json.dumps(raw, separators=(",", ":")).encode()
    body = raw.encode() if isinstance(raw, str) else bytes(raw)
    content_type = _header(headers, "Content-Type") or ""
    try:
        text = body.decode("utf-8")
        if "application/x-www-form-urlencoded" in content_type:
            return dict(parse_qsl(text, keep_blank_values=True)), body
        return json.loads(text), body
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayload(f"Invalid payload format: {exc}") from exc


def is_ping(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("type") == "ping"


def external_event_id(
    payload: Any, headers: Mapping[str, str], body: bytes, header_names: list[str]
) -> str:
    """Event id from the payload, configured headers, or a hash of the body."""
    if isinstance(payload, dict):
        for key in ("id", "event_id"):
            value = payload.get(key)
            if value not in (None, ""):
                return str(value)
    for name in header_names:
        value = _header(headers, name)
        if value:
            return value
    return "sha256:" + hashlib.sha256(body).hexdigest()


async def announce_run(
    transport: Optional[BaseTransport], run_id: str, reason: str, topic: str = RUNS_TOPIC
) -> None:
    """Hand a runnable run to the executors without waiting on execution.

    A failed publish is logged only; the executor scan loop picks the run up
    from the store.
    """
    if transport is None:
        return
    try:
        await transport.publish(topic, RunMessage(run_id=run_id, reason=reason))
    except Exception:
        logger.exception(f"Failed to publish run {run_id}; it will be picked up by the scan loop")


class WorkflowDispatcher:
    """Service responsible for turning triggers into pending workflow runs."""

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: Optional[BaseTransport] = None,
        webhooks: Optional[WebhookConfig] = None,
        topic: str = RUNS_TOPIC,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._webhooks = webhooks or WebhookConfig()
        self._topic = topic
        self._clock = clock

    async def _resolve(self, organization_id: str, trigger_key: str) -> WorkflowDefinition:
        definition = await self._repository.find_by_trigger_key(organization_id, trigger_key)
        if (
            definition is None
            or definition.trigger_type != TriggerType.WEBHOOK
            or not definition.is_enabled
        ):
            raise UnknownTrigger(organization_id, trigger_key)
        return definition

    def _verify(
        self, config: WebhookTriggerConfig, body: bytes, headers: Mapping[str, str]
    ) -> None:
        if not config.secret:
            if self._webhooks.require_secret:
                raise VerificationFailed(
                    f"Trigger '{config.trigger_key}' has no secret and secrets are required"
                )
            logger.debug(f"No webhook secret configured for {config.trigger_key}, skipping verification")
            return
        if not verify_signature(config.secret, body, headers, config.signature_scheme):
            raise VerificationFailed(f"Invalid {config.signature_scheme} signature")

    async def ingest(
        self,
        organization_id: str,
        trigger_key: str,
        raw_payload: RawPayload,
        headers: Optional[Mapping[str, str]] = None,
    ) -> IngestResult:
        """Accept one webhook delivery.

        Boundary failures are reported in the result rather than raised:
        unknown triggers (404), undecodable bodies (400) and bad signatures
        (401) never create a run.
        """
        headers = dict(headers or {})
        try:
            definition = await self._resolve(organization_id, trigger_key)
        except UnknownTrigger as exc:
            logger.warning(str(exc))
            return IngestResult(accepted=False, status_code=404, reason=str(exc))

        try:
            payload, body = parse_payload(raw_payload, headers)
        except InvalidPayload as exc:
            logger.warning(f"Rejected delivery for {trigger_key}: {exc}")
            return IngestResult(accepted=False, status_code=400, reason=str(exc))

        if is_ping(payload):
            logger.info(f"Ping received for trigger {trigger_key}")
            return IngestResult(accepted=True, status_code=200, reason="ping")

        event_id = external_event_id(payload, headers, body, self._webhooks.event_id_headers)
        event = InboundEvent(
            organization_id=organization_id,
            workflow_id=definition.id,
            trigger_key=trigger_key,
            external_event_id=event_id,
            payload=payload,
            headers=headers,
            received_at=self._clock(),
        )

        try:
            self._verify(definition.trigger_config, body, headers)
        except VerificationFailed as exc:
            logger.warning(f"Signature verification failed for {trigger_key}: {exc}")
            event.error_message = str(exc)
            await self._repository.record_event(event)
            return IngestResult(
                accepted=False, status_code=401, event_id=event_id, reason=str(exc)
            )

        event.verified = True
        event, created = await self._repository.record_event(event)
        if not created:
            if event.verified and event.produced_run_id:
                logger.info(
                    f"Duplicate delivery {event_id} for workflow {definition.id}; "
                    f"run {event.produced_run_id} already exists"
                )
                return IngestResult(
                    accepted=True,
                    status_code=202,
                    run_id=event.produced_run_id,
                    event_id=event_id,
                    duplicate=True,
                )
            if not event.verified:
                logger.info(f"Upgrading previously rejected event {event_id} to verified")
            event.verified = True
            event.payload = payload
            event.headers = headers
            event.error_message = None

        run, run_created = await self._repository.create_run(
            WorkflowRun(
                workflow_id=definition.id,
                organization_id=organization_id,
                trigger_kind=TriggerType.WEBHOOK,
                trigger_source=event_id,
                dedup_key=f"webhook:{event_id}",
                context={TRIGGER_CONTEXT_KEY: payload},
                created_at=self._clock(),
            )
        )
        event.produced_run_id = run.id
        event.processed = True
        event.processed_at = self._clock()
        await self._repository.save_event(event)

        if run_created:
            logger.info(f"Created run {run.id} for workflow {definition.id} from event {event_id}")
            await announce_run(self._transport, run.id, "webhook", self._topic)
        return IngestResult(
            accepted=True,
            status_code=202,
            run_id=run.id,
            event_id=event_id,
            duplicate=not run_created,
        )

    async def trigger_workflow(
        self,
        workflow_id: str,
        payload: Optional[Dict[str, Any]] = None,
        invoker_id: Optional[str] = None,
    ) -> str:
        """Start a run on demand and return its id.

        Raises:
            WorkflowNotFound: If no definition has ``workflow_id``.
            WorkflowDisabled: If the definition is switched off.
        """
        definition = await self._repository.get_definition(workflow_id)
        if definition is None:
            raise WorkflowNotFound(workflow_id)
        if not definition.is_enabled:
            raise WorkflowDisabled(workflow_id)

        now = self._clock()
        run = WorkflowRun(
            workflow_id=definition.id,
            organization_id=definition.organization_id,
            trigger_kind=TriggerType.MANUAL,
            trigger_source=f"manual:{invoker_id or 'system'}:{now.isoformat()}",
            context={TRIGGER_CONTEXT_KEY: payload or {}},
            created_at=now,
        )
        run, _ = await self._repository.create_run(run)
        logger.info(f"Created run {run.id} for workflow {workflow_id} on behalf of {invoker_id}")
        await announce_run(self._transport, run.id, "manual", self._topic)
        return run.id
