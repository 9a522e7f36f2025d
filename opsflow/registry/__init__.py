"""Action handler registry.

Maps action keys to executable capabilities. The registry is populated at
start-up and only read afterwards, so a single instance is shared by every
executor worker.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from ..contracts import StepFailure
from ..errors import HandlerError, UnknownAction
from .models import ActionDescriptor, ActionHandler, ActionOutcome, HandlerContext

logger = logging.getLogger(__name__)


def _normalize_output(output: Any) -> Any:
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json")
    return output


class ActionRegistry:
    """Registry of action handlers keyed by action key."""

    def __init__(self) -> None:
        self._actions: Dict[str, ActionDescriptor] = {}

    def register(
        self,
        action_key: str,
        handler: ActionHandler,
        input_model: Optional[Type[BaseModel]] = None,
        read_only: bool = False,
        description: str = "",
        replace: bool = False,
    ) -> ActionDescriptor:
        """Register ``handler`` under ``action_key``.

        Raises:
            ValueError: If the key is already registered and ``replace`` is false.
        """
        if action_key in self._actions and not replace:
            raise ValueError(f"Action '{action_key}' is already registered")
        descriptor = ActionDescriptor(
            action_key=action_key,
            handler=handler,
            input_model=input_model,
            read_only=read_only,
            description=description,
        )
        self._actions[action_key] = descriptor
        logger.debug(f"Registered action {action_key} (read_only={read_only})")
        return descriptor

    def action(
        self,
        action_key: str,
        input_model: Optional[Type[BaseModel]] = None,
        read_only: bool = False,
        description: str = "",
    ) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: ActionHandler) -> ActionHandler:
            self.register(
                action_key,
                handler,
                input_model=input_model,
                read_only=read_only,
                description=description or (handler.__doc__ or "").strip(),
            )
            return handler

        return decorator

    def get(self, action_key: str) -> ActionDescriptor:
        try:
            return self._actions[action_key]
        except KeyError:
            raise UnknownAction(action_key) from None

    def has(self, action_key: str) -> bool:
        return action_key in self._actions

    def list_actions(self) -> List[ActionDescriptor]:
        return sorted(self._actions.values(), key=lambda d: d.action_key)

    async def invoke(
        self,
        action_key: str,
        context: HandlerContext,
        data: Dict[str, Any],
        require_read_only: bool = False,
    ) -> ActionOutcome:
        """Run a handler and return its output or a classified failure.

        Handler exceptions never propagate: :class:`HandlerError` keeps its
        own classification, input validation errors are permanent, and
        anything else is recorded as a non-retryable ``unclassified`` failure.
        """
        try:
            descriptor = self.get(action_key)
        except UnknownAction as exc:
            return ActionOutcome(failure=_failure("unknown_action", exc))

        if require_read_only and not descriptor.read_only:
            return ActionOutcome(
                failure=StepFailure(
                    kind="configuration",
                    message=f"Action '{action_key}' is not read-only",
                    retryable=False,
                )
            )

        payload: Any = data
        if descriptor.input_model is not None:
            try:
                payload = descriptor.input_model.model_validate(data)
            except ValidationError as exc:
                return ActionOutcome(
                    failure=StepFailure(
                        kind="validation",
                        message=f"Invalid input for '{action_key}': {exc}",
                        retryable=False,
                    )
                )

        try:
            output = await descriptor.handler(context, payload)
        except HandlerError as exc:
            return ActionOutcome(failure=_failure("handler", exc))
        except Exception as exc:
            logger.exception(
                f"Action {action_key} raised an unclassified error for run {context.run_id}"
            )
            return ActionOutcome(
                failure=StepFailure(
                    kind="unclassified",
                    message=f"{type(exc).__name__}: {exc}",
                    retryable=False,
                )
            )
        return ActionOutcome(output=_normalize_output(output))


def _failure(kind: str, exc: HandlerError) -> StepFailure:
    return StepFailure(kind=kind, message=exc.message, retryable=exc.retryable, code=exc.code)


__all__ = [
    "ActionDescriptor",
    "ActionHandler",
    "ActionOutcome",
    "ActionRegistry",
    "HandlerContext",
]
