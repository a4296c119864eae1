from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable

from ..config import DEFAULT_MAX_STEPS
from ..errors import LLMCallError
from .catalog import ToolCatalog
from .conversation import ConversationState
from .emission import classify_response
from .invoker import ToolInvoker
from .models import (
    AgentEvent,
    AssistantText,
    LoopOutcome,
    LoopState,
    LoopStatus,
    TerminalEmission,
    TerminationReason,
    ToolRequests,
)
from .prompts import BUDGET_WARNING, CONTINUE_PROMPT, get_system_prompt

if TYPE_CHECKING:
    from ..llm import ChatClient

logger = logging.getLogger("khodkar.agent")

EventListener = Callable[[AgentEvent], None]

# Turns before the budget at which the model is told to wrap up.
WARN_REMAINING_STEPS = 3


class AgentLoop:
    """Bounded tool-use loop: call model, run requested tools, repeat.

    One step is one model round-trip, however many tools it requested.
    The loop ends when the model replies with a structured emission and no
    tool calls (completed), when the step budget is spent (budget
    exhausted), when the caller cancels between steps, or when the model
    call itself fails (failed; the ``LLMCallError`` is re-raised).

    Tools requested within a step run one at a time, in the order the model
    listed them, and each result is appended before the next call starts.
    """

    def __init__(
        self,
        llm: ChatClient,
        catalog: ToolCatalog,
        invoker: ToolInvoker,
        max_steps: int = DEFAULT_MAX_STEPS,
        system_prompt: str | None = None,
        listener: EventListener | None = None,
    ) -> None:
        if max_steps < 1:
            raise ValueError(f"max_steps must be positive, got {max_steps}")
        self.llm = llm
        self.catalog = catalog
        self.invoker = invoker
        self.conversation = ConversationState()
        self.state = LoopState(budget=max_steps)
        self._system_prompt = system_prompt or get_system_prompt(max_steps)
        self._listener = listener
        self._stop_requested = False

    def cancel(self) -> None:
        """Ask the loop to stop before its next step."""
        if not self._stop_requested:
            logger.warning("Cancellation requested for agent loop")
        self._stop_requested = True

    @property
    def cancelled(self) -> bool:
        return self._stop_requested

    async def run(self, task: str) -> LoopOutcome:
        if self.state.status is not LoopStatus.IDLE:
            raise RuntimeError("AgentLoop.run() may only be called once per loop")
        self.state.status = LoopStatus.RUNNING

        self.conversation.add_system(self._system_prompt)
        self.conversation.add_user(task)
        tools = self.catalog.to_schema()
        logger.info(f"Agent loop started with {len(tools)} tools, budget {self.state.budget} steps")

        try:
            return await self._run_steps(tools)
        except asyncio.CancelledError:
            self.state.finish(LoopStatus.CANCELLED, TerminationReason.CANCELLED)
            raise

    async def _run_steps(self, tools: list[dict]) -> LoopOutcome:
        while True:
            if self._stop_requested:
                self.state.finish(LoopStatus.CANCELLED, TerminationReason.CANCELLED)
                return self._outcome()

            if self.state.budget_exhausted:
                logger.warning(f"Step budget of {self.state.budget} exhausted without a final answer")
                self.state.finish(LoopStatus.BUDGET_EXHAUSTED, TerminationReason.BUDGET_EXHAUSTED)
                return self._outcome(self.conversation.latest_emission)

            step_no = self.state.step + 1
            self._emit("step", step=step_no, budget=self.state.budget)

            try:
                response = await self.llm.complete(self.conversation.to_openai(), tools)
            except LLMCallError as e:
                e.details.setdefault("step", step_no)
                logger.error(f"Model call failed at step {step_no}: {e}")
                self.state.finish(LoopStatus.FAILED, TerminationReason.FATAL_ERROR)
                self._emit("error", message=str(e), kind=e.kind)
                raise
            except Exception:
                logger.exception(f"Unexpected error calling the model at step {step_no}")
                self.state.finish(LoopStatus.FAILED, TerminationReason.FATAL_ERROR)
                raise

            self.state.step = step_no
            action = classify_response(response)
            self.conversation.add_assistant(response.content, response.tool_calls)

            if isinstance(action, TerminalEmission):
                self.conversation.record_emission(action.emission)
                self._emit("emission", entries=len(action.emission.get("businessRules", [])))
                self.state.finish(LoopStatus.COMPLETED, TerminationReason.EXPLICIT_STOP)
                return self._outcome(action.emission)

            remaining = self.state.budget - self.state.step
            warn = remaining == WARN_REMAINING_STEPS

            if isinstance(action, ToolRequests):
                if action.partial_emission is not None:
                    self.conversation.record_emission(action.partial_emission)
                await self._run_tools(action)
            elif isinstance(action, AssistantText):
                logger.info(f"Step {step_no}: text-only reply ({len(action.text)} chars), nudging for an answer")
                if remaining > 0:
                    nudge = CONTINUE_PROMPT.format(remaining=remaining)
                    if warn:
                        nudge += "\n" + BUDGET_WARNING.format(remaining=remaining)
                        warn = False
                    self.conversation.add_user(nudge)
            else:
                raise TypeError(f"Unhandled model action: {action!r}")

            if warn and not self._stop_requested:
                self.conversation.add_user(BUDGET_WARNING.format(remaining=remaining))

    async def _run_tools(self, action: ToolRequests) -> None:
        for call in action.calls:
            if self._stop_requested:
                logger.info(f"Skipping remaining tool calls after cancellation (next: {call.name})")
                return
            self._emit("tool_start", tool_id=call.id, tool=call.name, arguments=call.arguments)
            result = await self.invoker.invoke(call)
            if self._stop_requested:
                logger.info(f"Discarding result of {call.name} received after cancellation")
                return
            self.conversation.add_tool_result(result)
            self._emit(
                "tool_end",
                tool_id=call.id,
                tool=call.name,
                success=result.success,
                duration=round(result.duration, 2),
                error_kind=result.error_kind.value if result.error_kind else None,
            )

    def _outcome(self, emission: dict | None = None) -> LoopOutcome:
        self._emit("done", status=self.state.status.value, steps=self.state.step)
        return LoopOutcome(
            status=self.state.status,
            termination=self.state.termination,
            steps=self.state.step,
            emission=emission,
        )

    def _emit(self, event_type: str, **data) -> None:
        if self._listener is None:
            return
        try:
            self._listener(AgentEvent(type=event_type, data=data))
        except Exception:
            logger.exception(f"Event listener failed on '{event_type}'")

    def get_stats(self) -> dict:
        return {
            "status": self.state.status.value,
            "step": self.state.step,
            "max_steps": self.state.budget,
            "message_count": len(self.conversation),
            "tool_counts": dict(self.conversation.tool_counts),
        }
