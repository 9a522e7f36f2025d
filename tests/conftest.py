"""Shared fixtures for opsflow tests."""

from datetime import datetime, timedelta, timezone

import pytest

from opsflow.config import OpsflowConfig
from opsflow.contracts import WorkflowDefinition
from opsflow.dispatch import WorkflowDispatcher
from opsflow.execute import RunExecutor
from opsflow.persistence import InMemoryWorkflowRepository
from opsflow.records import InMemoryRecordStore
from opsflow.registry import ActionRegistry
from opsflow.schedule import ScheduleRunner
from opsflow.transports import InMemoryTransport


class Clock:
    """Manually advanced clock injected into the services."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def registry():
    return ActionRegistry()


@pytest.fixture
def dispatcher(repository, transport, clock):
    return WorkflowDispatcher(repository, transport, clock=clock)


@pytest.fixture
def executor(repository, registry, records, transport, clock):
    return RunExecutor(
        repository, registry, records=records, transport=transport, config=OpsflowConfig(), clock=clock
    )


@pytest.fixture
def scheduler(repository, clock):
    return ScheduleRunner(repository, clock=clock)


def webhook_definition(**overrides) -> WorkflowDefinition:
    data = {
        "organization_id": "org-1",
        "name": "Notify customer",
        "trigger_type": "webhook",
        "trigger_config": {"type": "webhook", "trigger_key": "ticket-created"},
        "steps": [],
    }
    data.update(overrides)
    return WorkflowDefinition.model_validate(data)


@pytest.fixture
def make_definition():
    return webhook_definition
