"""Agent package.

Public API:
    from khodkar.analysis.agent import AgentLoop, ToolCatalog, ToolInvoker, ResultAggregator

Internal layout:
    models.py       : Tool, ToolCallRequest/Result, messages, loop state, BusinessRule, AnalysisResult
    catalog.py      : ToolCatalog (discovery across tool servers, name collisions)
    invoker.py      : ToolInvoker (routing, per-call timeout, failure envelopes)
    conversation.py : ConversationState (append-only history, latest emission)
    emission.py     : structured-emission recognition and response classification
    prompts.py      : system / task / nudge prompt text
    aggregator.py   : ResultAggregator (schema validation, dedup, summary)
    loop.py         : AgentLoop (step cycle and termination policy)
"""

from .aggregator import ResultAggregator
from .catalog import ToolCatalog
from .conversation import ConversationState
from .invoker import ToolInvoker
from .loop import AgentLoop
from .models import (
    AgentEvent,
    AnalysisResult,
    BusinessRule,
    LoopOutcome,
    LoopStatus,
    TerminationReason,
    Tool,
    ToolCallRequest,
    ToolCallResult,
)

__all__ = [
    "AgentLoop",
    "AgentEvent",
    "AnalysisResult",
    "BusinessRule",
    "ConversationState",
    "LoopOutcome",
    "LoopStatus",
    "ResultAggregator",
    "TerminationReason",
    "Tool",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCatalog",
    "ToolInvoker",
]
