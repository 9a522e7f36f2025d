"""Templated model generation handler built on pydantic-ai."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field
from pydantic_ai import Agent
from pydantic_ai.exceptions import (
    AgentRunError,
    ModelHTTPError,
    UnexpectedModelBehavior,
    UserError,
)

from ..errors import HandlerError
from ..registry.models import HandlerContext

logger = logging.getLogger(__name__)

AI_ACTION = "ai.generate"

AgentFactory = Callable[[str, Optional[str]], Any]


class GenerateInput(BaseModel):
    prompt: str = Field(min_length=1)
    instructions: Optional[str] = None
    model: Optional[str] = None


def default_agent_factory(model: str, instructions: Optional[str]) -> Agent:
    if instructions:
        return Agent(model, system_prompt=instructions)
    return Agent(model)


class GenerateHandler:
    """Runs one generation call with the organization's model settings."""

    def __init__(self, agent_factory: Optional[AgentFactory] = None) -> None:
        self._agent_factory = agent_factory or default_agent_factory

    async def __call__(self, context: HandlerContext, request: GenerateInput) -> Dict[str, Any]:
        ai = context.settings.ai
        model = request.model or ai.model
        instructions = request.instructions or ai.instructions
        model_settings = {"temperature": ai.temperature} if ai.temperature is not None else None

        try:
            agent = self._agent_factory(model, instructions)
            result = await agent.run(request.prompt, model_settings=model_settings)
        except ModelHTTPError as exc:
            retryable = exc.status_code == 429 or exc.status_code >= 500
            raise HandlerError(
                f"Model {model} returned {exc.status_code}", retryable=retryable, code=f"http_{exc.status_code}"
            ) from exc
        except UnexpectedModelBehavior as exc:
            raise HandlerError(f"Model {model} misbehaved: {exc}", retryable=True, code="model_behavior") from exc
        except UserError as exc:
            raise HandlerError(f"Model {model} is misconfigured: {exc}", retryable=False, code="model_config") from exc
        except AgentRunError as exc:
            raise HandlerError(f"Generation with {model} failed: {exc}", retryable=False, code="agent_run") from exc

        logger.info(f"Generated text with {model} for run {context.run_id} step {context.step_id}")
        return {"text": str(result.output), "model": model}
