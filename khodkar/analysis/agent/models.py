from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ..errors import ToolFailureKind

logger = logging.getLogger("khodkar.agent")


# ── Tools ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    server: str

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    tool_name: str
    success: bool
    payload: str = ""
    error_kind: ToolFailureKind | None = None
    error_message: str = ""
    duration: float = 0.0

    @classmethod
    def ok(cls, request: ToolCallRequest, payload: str, duration: float = 0.0) -> ToolCallResult:
        return cls(request.id, request.name, True, payload=payload, duration=duration)

    @classmethod
    def failure(
        cls,
        request: ToolCallRequest,
        kind: ToolFailureKind,
        message: str,
        duration: float = 0.0,
    ) -> ToolCallResult:
        return cls(
            request.id, request.name, False,
            error_kind=kind, error_message=message, duration=duration,
        )

    def render(self) -> str:
        """Text handed back to the model as the tool message content."""
        if self.success:
            return self.payload
        return f"ERROR [{self.error_kind.value}]: {self.error_message}"


# ── Messages ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SystemMessage:
    content: str
    role: ClassVar[str] = "system"

    def to_openai(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class UserMessage:
    content: str
    role: ClassVar[str] = "user"

    def to_openai(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class AssistantMessage:
    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    role: ClassVar[str] = "assistant"

    def to_openai(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        return msg


@dataclass(frozen=True)
class ToolResultMessage:
    result: ToolCallResult
    role: ClassVar[str] = "tool"

    def to_openai(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "tool_call_id": self.result.call_id,
            "name": self.result.tool_name,
            "content": self.result.render(),
        }


Message = Union[SystemMessage, UserMessage, AssistantMessage, ToolResultMessage]


# ── Model responses ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ModelResponse:
    """Raw assistant turn as returned by a chat client."""

    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    finish_reason: str | None = None


class ActionKind(str, Enum):
    ASSISTANT_TEXT = "assistant_text"
    TOOL_REQUESTS = "tool_requests"
    TERMINAL_EMISSION = "terminal_emission"


@dataclass(frozen=True)
class AssistantText:
    text: str
    kind: ClassVar[ActionKind] = ActionKind.ASSISTANT_TEXT


@dataclass(frozen=True)
class ToolRequests:
    calls: tuple[ToolCallRequest, ...]
    partial_emission: dict[str, Any] | None = None
    kind: ClassVar[ActionKind] = ActionKind.TOOL_REQUESTS


@dataclass(frozen=True)
class TerminalEmission:
    emission: dict[str, Any]
    kind: ClassVar[ActionKind] = ActionKind.TERMINAL_EMISSION


ModelAction = Union[AssistantText, ToolRequests, TerminalEmission]


# ── Loop state ───────────────────────────────────────────────────────


class LoopStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"


class TerminationReason(str, Enum):
    NONE = "none"
    EXPLICIT_STOP = "explicit_stop"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FATAL_ERROR = "fatal_error"
    CANCELLED = "cancelled"


@dataclass
class LoopState:
    budget: int
    step: int = 0
    status: LoopStatus = LoopStatus.IDLE
    termination: TerminationReason = TerminationReason.NONE

    @property
    def budget_exhausted(self) -> bool:
        return self.step >= self.budget

    def finish(self, status: LoopStatus, reason: TerminationReason) -> None:
        self.status = status
        self.termination = reason
        logger.info(f"Loop finished: status={status.value} reason={reason.value} steps={self.step}")


@dataclass(frozen=True)
class LoopOutcome:
    status: LoopStatus
    termination: TerminationReason
    steps: int
    emission: dict[str, Any] | None = None

    @property
    def completed(self) -> bool:
        return self.status is LoopStatus.COMPLETED


# ── Business rules ───────────────────────────────────────────────────


Priority = Literal["low", "medium", "high"]


class LineRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: int
    end: int


class SourceReference(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    file_path: str = Field(alias="filePath")
    line_range: LineRange | None = Field(default=None, alias="lineRange")

    def label(self) -> str:
        if self.line_range is None:
            return self.file_path
        if self.line_range.start == self.line_range.end:
            return f"{self.file_path}:{self.line_range.start}"
        return f"{self.file_path}:{self.line_range.start}-{self.line_range.end}"


class BusinessRule(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    title: str
    description: str
    category: str
    priority: Priority
    user_facing: bool = Field(alias="userFacing")
    source_references: tuple[SourceReference, ...] = Field(default=(), alias="sourceReferences")


class AnalysisSummary(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    total_rules: int = Field(alias="totalRules")
    high_priority_rules: int = Field(alias="highPriorityRules")
    user_facing_rules: int = Field(alias="userFacingRules")


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    analysis_date: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        alias="analysisDate",
    )
    business_rules: tuple[BusinessRule, ...] = Field(default=(), alias="businessRules")

    @computed_field(alias="summary")
    @property
    def summary(self) -> AnalysisSummary:
        rules = self.business_rules
        return AnalysisSummary(
            total_rules=len(rules),
            high_priority_rules=sum(1 for r in rules if r.priority == "high"),
            user_facing_rules=sum(1 for r in rules if r.user_facing),
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class AgentEvent:
    type: str  # "step", "tool_start", "tool_end", "emission", "done", "error"
    data: dict[str, Any] = field(default_factory=dict)
