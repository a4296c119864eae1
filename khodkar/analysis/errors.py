"""Error taxonomy for Khodkar.

Loop-level failures are raised as ``KhodkarError`` subclasses and carry the
originating identifier in ``details``. Per-tool-call failures are never
raised; they travel as ``ToolFailureKind`` values inside a ``ToolCallResult``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ToolFailureKind(str, Enum):
    TOOL_EXECUTION_ERROR = "ToolExecutionError"
    TOOL_SERVER_UNAVAILABLE = "ToolServerUnavailable"
    TOOL_TIMEOUT = "ToolTimeout"


class KhodkarError(Exception):
    """Base class for every fatal error surfaced to the caller."""

    kind = "KhodkarError"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def __str__(self) -> str:
        return self.message


class ConfigurationError(KhodkarError):
    kind = "ConfigurationError"


class DiscoveryError(KhodkarError):
    """Tool catalog setup failed; the run aborts before the first model call."""

    kind = "DiscoveryError"

    def __init__(self, message: str, server: str, **details: Any) -> None:
        super().__init__(message, server=server, **details)
        self.server = server


class LLMCallError(KhodkarError):
    """Calling the model failed (transport, auth, rate limit, bad request)."""

    kind = "LLMCallError"

    def __init__(
        self,
        message: str,
        reason: str = "network",
        status_code: int | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, reason=reason, status_code=status_code, **details)
        self.reason = reason
        self.status_code = status_code


class ValidationError(KhodkarError):
    """The model's final emission does not match the business-rule schema."""

    kind = "ValidationError"

    def __init__(self, message: str, issues: list[str] | None = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.issues = list(issues or [])

    def __str__(self) -> str:
        if not self.issues:
            return self.message
        return self.message + "\n" + "\n".join(f"  - {issue}" for issue in self.issues)


class AnalysisCancelled(KhodkarError):
    kind = "AnalysisCancelled"
