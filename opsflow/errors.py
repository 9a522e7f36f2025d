"""Error taxonomy for the workflow automation engine."""

from __future__ import annotations

from typing import Optional


class OpsflowError(Exception):
    """Base class for all engine errors."""


class UnknownTrigger(OpsflowError):
    """No enabled workflow owns the given trigger key."""

    def __init__(self, organization_id: str, trigger_key: str):
        self.organization_id = organization_id
        self.trigger_key = trigger_key
        super().__init__(
            f"No webhook workflow for trigger '{trigger_key}' in organization {organization_id}"
        )


class VerificationFailed(OpsflowError):
    """An inbound webhook did not carry a valid signature."""


class InvalidPayload(OpsflowError):
    """An inbound webhook body could not be decoded."""


class DefinitionError(OpsflowError, ValueError):
    """A workflow definition is malformed."""


class TemplateError(OpsflowError):
    """A templated reference could not be resolved against the run context."""

    def __init__(self, reference: str, message: str):
        self.reference = reference
        super().__init__(f"Cannot resolve '{{{{{reference}}}}}': {message}")


class HandlerError(OpsflowError):
    """Failure raised by an action handler, classified at its origin.

    ``retryable`` tells the retry controller whether another attempt may
    succeed; handlers are the only place that decision is made.
    """

    def __init__(self, message: str, retryable: bool = False, code: Optional[str] = None):
        self.message = message
        self.retryable = retryable
        self.code = code
        super().__init__(message)


class UnknownAction(HandlerError):
    """The requested action key is not registered."""

    def __init__(self, action_key: str):
        self.action_key = action_key
        super().__init__(
            f"Action '{action_key}' is not registered", retryable=False, code="unknown_action"
        )


class RetryExhausted(OpsflowError):
    """A step kept failing after the retry policy's last attempt."""

    def __init__(self, step_id: str, attempts: int, last_error: str):
        self.step_id = step_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step '{step_id}' failed after {attempts} attempt(s): {last_error}"
        )


class CallbackError(OpsflowError):
    """A completion callback could not be written back."""


class ConcurrentModification(OpsflowError):
    """A run was changed by another writer since it was loaded."""

    def __init__(self, run_id: str, expected_version: int):
        self.run_id = run_id
        self.expected_version = expected_version
        super().__init__(
            f"Run {run_id} was modified concurrently (expected version {expected_version})"
        )


class RunNotFound(OpsflowError, KeyError):
    """No run exists with the given id."""


class WorkflowNotFound(OpsflowError, KeyError):
    """No workflow definition exists with the given id."""


class InvalidTransition(OpsflowError):
    """A run status change is not permitted by the run state machine."""

    def __init__(self, run_id: str, current: str, target: str):
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(f"Run {run_id} cannot move from {current} to {target}")


class WorkflowDisabled(OpsflowError):
    """The workflow exists but is switched off."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} is disabled")
