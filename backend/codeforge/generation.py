import asyncio
import logging
import re
from typing import Any, Awaitable, Callable

from agents import Agent, Runner
from agents.exceptions import MaxTurnsExceeded
from openai.types.responses import ResponseTextDeltaEvent

from codeforge import config
from codeforge.context import AgentRunContext
from codeforge.fallback import AttemptPlan, Sleep, with_rate_limit_retry
from codeforge.models import SUBAGENT_MODEL, get_model
from codeforge.prompts import RESEARCH_SYSTEM_PROMPT
from codeforge.providers import ProviderClients, model_settings_for
from codeforge.tools import AGENT_TOOLS


logger = logging.getLogger("codeforge.generation")

SUMMARY_PATTERN = re.compile(r"<task_summary>(.*?)</task_summary>", re.DOTALL)


def extract_summary(text: str) -> str | None:
    """Return the trimmed contents of the last <task_summary> block, if any."""
    matches = SUMMARY_PATTERN.findall(text or "")
    if not matches:
        return None
    summary = matches[-1].strip()
    return summary or None


class ModelRunner:
    """Executes one provider attempt; retries are layered on by FallbackChain.

    ``generate`` runs the tool loop and streams text deltas onto the run's event
    bus. ``complete`` is a single non-streaming chat completion.
    """

    def __init__(self, providers: ProviderClients, max_turns: int = config.MAX_TURNS) -> None:
        self.providers = providers
        self.max_turns = max_turns

    def build_agent(self, plan: AttemptPlan, instructions: str) -> Agent[AgentRunContext]:
        descriptor = get_model(plan.model_id)
        return Agent[AgentRunContext](
            name="Codeforge Agent",
            instructions=instructions,
            tools=AGENT_TOOLS,
            model=self.providers.model_for(plan),
            model_settings=model_settings_for(descriptor, plan.shaped),
        )

    async def generate(
        self,
        plan: AttemptPlan,
        instructions: str,
        messages: list[dict[str, Any]],
        ctx: AgentRunContext,
        max_turns: int | None = None,
    ) -> str:
        agent = self.build_agent(plan, instructions)
        logger.info(
            "generate model=%s transport=%s attempt=%d messages=%d",
            plan.model_id,
            plan.transport,
            plan.attempt,
            len(messages),
        )
        result = Runner.run_streamed(
            agent,
            input=messages,
            context=ctx,
            max_turns=max_turns or self.max_turns,
        )
        chunks: list[str] = []
        try:
            async for event in result.stream_events():
                if event.type == "raw_response_event" and isinstance(event.data, ResponseTextDeltaEvent):
                    if event.data.delta:
                        chunks.append(event.data.delta)
                        ctx.bus.text_delta(event.data.delta)
        except MaxTurnsExceeded as e:
            # Files written so far stay in ctx.state
            logger.warning(
                "generate model=%s stopped at the turn limit: %s (files=%d)",
                plan.model_id,
                str(e),
                len(ctx.state.files),
            )
        finally:
            # Tool events queued after the last text chunk
            ctx.bus.flush()
        text = "".join(chunks)
        if not text and result.final_output:
            text = str(result.final_output)
        ctx.text.append(text)
        return text

    async def complete(
        self,
        plan: AttemptPlan,
        system: str,
        prompt: str,
        temperature: float | None = None,
    ) -> str:
        return await self.providers.complete(plan, system, prompt, temperature=temperature)


def first_attempt(model_id: str) -> AttemptPlan:
    """Plan for a single call on the model's default transport."""
    return AttemptPlan(model_id=model_id, transport=get_model(model_id).transport, attempt=1)


def subagent_completion(
    runner: ModelRunner, model_id: str = SUBAGENT_MODEL, sleep: Sleep = asyncio.sleep
) -> Callable[[str], Awaitable[str]]:
    """Prompt-in, text-out callable used by the research dispatcher.

    Rate-limit and server errors are retried; the dispatcher's timeout still
    bounds the whole call.
    """
    descriptor = get_model(model_id)
    plan = first_attempt(model_id)

    async def _complete(prompt: str) -> str:
        return await with_rate_limit_retry(
            lambda: runner.complete(
                plan, RESEARCH_SYSTEM_PROMPT, prompt, temperature=descriptor.temperature
            ),
            sleep=sleep,
        )

    return _complete
