"""opsflow: per-organization workflow automation triggered by webhooks and schedules."""

from .config import OpsflowConfig, load_config
from .contracts import (
    RetryPolicy,
    RunStatus,
    RunView,
    TriggerType,
    WorkflowDefinition,
    WorkflowRun,
)
from .dispatch import IngestResult, WorkflowDispatcher
from .engine import Engine
from .execute import RunExecutor
from .persistence import get_repository
from .registry import ActionRegistry, HandlerContext
from .schedule import ScheduleRunner
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionRegistry",
    "Engine",
    "HandlerContext",
    "IngestResult",
    "OpsflowConfig",
    "RetryPolicy",
    "RunExecutor",
    "RunStatus",
    "RunView",
    "ScheduleRunner",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "WorkflowRun",
    "get_repository",
    "get_transport",
    "load_config",
]
