"""Assembly of the engine's components from configuration."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

import httpx
import yaml

from .config import OpsflowConfig, load_config
from .contracts import WorkflowDefinition, utcnow
from .dispatch import WorkflowDispatcher
from .execute import RunExecutor
from .handlers import register_default_handlers
from .handlers.ai import AgentFactory
from .persistence import WorkflowRepository, get_repository
from .records import RecordStore, get_record_store
from .registry import ActionRegistry
from .schedule import ScheduleRunner
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


def parse_definitions(data: Any) -> List[WorkflowDefinition]:
    """Build definitions from decoded YAML: a list or ``{"workflows": [...]}``."""
    if isinstance(data, dict):
        data = data.get("workflows", [data])
    return [WorkflowDefinition.model_validate(item) for item in data or []]


def read_definitions(path: str | Path) -> List[WorkflowDefinition]:
    with open(path) as f:
        return parse_definitions(yaml.safe_load(f))


class Engine:
    """Repository, transport, registry and the three services sharing them."""

    def __init__(
        self,
        config: Optional[OpsflowConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        transport: Optional[BaseTransport] = None,
        records: Optional[RecordStore] = None,
        registry: Optional[ActionRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        agent_factory: Optional[AgentFactory] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.transport = transport or get_transport(config=self.config)
        self.records = records or get_record_store(self.config.records_url)
        if registry is None:
            registry = register_default_handlers(
                ActionRegistry(),
                self.records,
                http_transport=http_transport,
                agent_factory=agent_factory,
            )
        self.registry = registry

        self.dispatcher = WorkflowDispatcher(
            self.repository, self.transport, webhooks=self.config.webhooks, clock=clock
        )
        self.executor = RunExecutor(
            self.repository,
            self.registry,
            records=self.records,
            transport=self.transport,
            config=self.config,
            clock=clock,
        )
        self.scheduler = ScheduleRunner(
            self.repository, self.transport, config=self.config.scheduler, clock=clock
        )

    async def save_definitions(self, definitions: List[WorkflowDefinition]) -> None:
        for definition in definitions:
            await self.repository.save_definition(definition)
            logger.info(f"Saved workflow {definition.id} ({definition.name})")

    async def load_definitions(self, path: str | Path) -> List[WorkflowDefinition]:
        definitions = read_definitions(path)
        await self.save_definitions(definitions)
        return definitions

    async def close(self) -> None:
        await self.transport.disconnect()
        close = getattr(self.records, "close", None)
        if close is not None:
            await close()
