"""Reference action handlers."""

from __future__ import annotations

from typing import Optional

import httpx

from ..constants import DATA_QUERY_ACTION
from ..records import RecordStore
from ..registry import ActionRegistry
from .ai import AI_ACTION, AgentFactory, GenerateHandler, GenerateInput
from .data import (
    SET_FIELDS_ACTION,
    DataQueryHandler,
    DataQueryInput,
    SetFieldsHandler,
    SetFieldsInput,
)
from .http import HTTP_ACTION, HttpRequestHandler, HttpRequestInput


def register_default_handlers(
    registry: ActionRegistry,
    records: RecordStore,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    agent_factory: Optional[AgentFactory] = None,
) -> ActionRegistry:
    """Register the built-in HTTP, generation and business data actions."""
    registry.register(
        HTTP_ACTION,
        HttpRequestHandler(transport=http_transport),
        input_model=HttpRequestInput,
        description="Call an external HTTP API",
    )
    registry.register(
        AI_ACTION,
        GenerateHandler(agent_factory),
        input_model=GenerateInput,
        description="Generate text from a templated prompt",
    )
    registry.register(
        DATA_QUERY_ACTION,
        DataQueryHandler(records),
        input_model=DataQueryInput,
        read_only=True,
        description="Read business records",
    )
    registry.register(
        SET_FIELDS_ACTION,
        SetFieldsHandler(records),
        input_model=SetFieldsInput,
        description="Set fields on a business record",
    )
    return registry


__all__ = [
    "AI_ACTION",
    "DATA_QUERY_ACTION",
    "HTTP_ACTION",
    "SET_FIELDS_ACTION",
    "register_default_handlers",
]
