"""Agent prompt execution used by agent-driven workflow nodes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from pydantic_ai import Agent, RunContext
from pydantic_ai.models import Model
from pydantic_ai.usage import UsageLimits

from .contracts import AgentPromptResult

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = (
    "You are executing one step of an automated workflow. "
    "Complete the requested step and reply with a concise summary of the result."
)


class AgentPromptExecutor(Protocol):
    """Callable that runs a prompt through an agent and returns its reply."""

    async def __call__(
        self,
        prompt: str,
        *,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
    ) -> AgentPromptResult: ...


def coerce_prompt_result(result: Any) -> AgentPromptResult:
    """Accept the shapes executors commonly return."""
    if isinstance(result, AgentPromptResult):
        return result
    if isinstance(result, str):
        return AgentPromptResult(content=result)
    return AgentPromptResult.model_validate(result)


@dataclass
class WorkflowStepDeps:
    """Dependencies exposed to the agent for a single workflow step."""

    working_directory: Optional[str] = None


async def _working_directory_instructions(ctx: RunContext[WorkflowStepDeps]) -> Optional[str]:
    if ctx.deps and ctx.deps.working_directory:
        return f"Operate within the working directory: {ctx.deps.working_directory}"
    return None


class PydanticAIPromptExecutor:
    """Run workflow prompts through a pydantic-ai ``Agent``.

    ``max_turns`` maps onto the agent's request limit; ``model`` overrides the
    agent model for a single call.
    """

    def __init__(
        self,
        model: Union[str, Model, None] = None,
        instructions: Optional[str] = None,
        agent: Optional[Agent] = None,
    ) -> None:
        if agent is None:
            agent = Agent(
                model,
                deps_type=WorkflowStepDeps,
                instructions=instructions or DEFAULT_INSTRUCTIONS,
            )
            agent.instructions(_working_directory_instructions)
        self.agent = agent

    async def __call__(
        self,
        prompt: str,
        *,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
    ) -> AgentPromptResult:
        usage_limits = UsageLimits(request_limit=max_turns) if max_turns else None
        logger.debug(f"Running workflow prompt (model={model}, max_turns={max_turns})")
        result = await self.agent.run(
            prompt,
            model=model,
            deps=WorkflowStepDeps(working_directory=working_directory),
            usage_limits=usage_limits,
        )
        usage = result.usage()
        return AgentPromptResult(
            content=str(result.output),
            prompt_tokens=usage.input_tokens,
            completion_tokens=usage.output_tokens,
        )
