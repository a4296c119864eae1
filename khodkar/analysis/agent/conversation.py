from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

from .models import (
    AssistantMessage,
    Message,
    SystemMessage,
    ToolCallRequest,
    ToolCallResult,
    ToolResultMessage,
    UserMessage,
)

logger = logging.getLogger("khodkar.agent")


@dataclass
class ConversationState:
    """Append-only message history for one analysis run.

    Insertion order is the model's context and is never rewritten. Besides
    the messages it tracks the most recent structured emission seen in any
    assistant turn, so a run that runs out of steps can still surface it.
    """

    _messages: list[Message] = field(default_factory=list)
    latest_emission: dict[str, Any] | None = None
    tool_counts: dict[str, int] = field(default_factory=lambda: {"success": 0, "failure": 0, "total": 0})

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def add_system(self, content: str) -> None:
        self._messages.append(SystemMessage(content))

    def add_user(self, content: str) -> None:
        self._messages.append(UserMessage(content))

    def add_assistant(self, content: str, tool_calls: tuple[ToolCallRequest, ...] = ()) -> None:
        self._messages.append(AssistantMessage(content, tuple(tool_calls)))

    def add_tool_result(self, result: ToolCallResult) -> None:
        self._messages.append(ToolResultMessage(result))
        self.tool_counts["total"] += 1
        self.tool_counts["success" if result.success else "failure"] += 1

    def record_emission(self, emission: dict[str, Any]) -> None:
        self.latest_emission = emission
        logger.debug(f"Recorded structured emission with {len(emission.get('businessRules', []))} entries")

    def tool_results(self) -> list[ToolCallResult]:
        return [m.result for m in self._messages if isinstance(m, ToolResultMessage)]

    def to_openai(self) -> list[dict[str, Any]]:
        return [m.to_openai() for m in self._messages]
