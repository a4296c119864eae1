from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import anyio
from mcp.shared.exceptions import McpError

from ..errors import ToolFailureKind
from .catalog import ToolCatalog
from .models import ToolCallRequest, ToolCallResult

logger = logging.getLogger("khodkar.agent")

# Transport-level failures meaning the server itself is gone.
_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    ConnectionError,
    EOFError,
)


class ToolInvoker:
    """Routes a requested tool call to its owning server.

    Every outcome comes back as a ``ToolCallResult``; nothing a tool server
    does is raised to the caller. Timed-out calls are abandoned, not retried.
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        timeout: float = 60.0,
        max_result_chars: int = 50_000,
    ) -> None:
        self.catalog = catalog
        self.timeout = timeout
        self.max_result_chars = max_result_chars

    async def invoke(self, request: ToolCallRequest, timeout: float | None = None) -> ToolCallResult:
        timeout = self.timeout if timeout is None else timeout

        tool = self.catalog.lookup(request.name)
        if tool is None:
            registered = ", ".join(self.catalog.names) or "none"
            message = (
                "Tool call is missing a name."
                if not request.name
                else f"Tool '{request.name}' does not exist."
            )
            logger.warning(f"Model requested unknown tool {request.name!r}")
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_EXECUTION_ERROR,
                f"{message} Registered tools: {registered}.",
            )

        if "_raw" in request.arguments and len(request.arguments) == 1:
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_EXECUTION_ERROR,
                f"Arguments for '{request.name}' are not valid JSON: {request.arguments['_raw'][:200]}",
            )

        session = self.catalog.manager.session(tool.server)
        if session is None:
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_SERVER_UNAVAILABLE,
                f"Tool server '{tool.server}' is not connected.",
            )

        logger.info(f"Invoking {request.name} on '{tool.server}' (id={request.id}) args={request.arguments}")
        start_time = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                session.call_tool(request.name, request.arguments), timeout=timeout,
            )
        except asyncio.TimeoutError:
            duration = time.monotonic() - start_time
            logger.warning(f"Tool {request.name} timed out after {timeout}s")
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_TIMEOUT,
                f"Tool '{request.name}' did not respond within {timeout}s.",
                duration,
            )
        except McpError as e:
            duration = time.monotonic() - start_time
            logger.warning(f"Tool {request.name} rejected by '{tool.server}': {e}")
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_EXECUTION_ERROR, str(e), duration,
            )
        except _UNAVAILABLE_ERRORS as e:
            duration = time.monotonic() - start_time
            logger.error(f"Tool server '{tool.server}' unavailable during {request.name}: {e!r}")
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_SERVER_UNAVAILABLE,
                f"Tool server '{tool.server}' is unavailable: {str(e) or type(e).__name__}",
                duration,
            )
        except Exception as e:
            duration = time.monotonic() - start_time
            logger.error(f"Tool exec error for {request.name}: {e!r}")
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_EXECUTION_ERROR, str(e) or type(e).__name__, duration,
            )

        duration = time.monotonic() - start_time
        text = self._truncate(self._render_content(raw))
        if getattr(raw, "isError", False):
            return ToolCallResult.failure(
                request, ToolFailureKind.TOOL_EXECUTION_ERROR, text or "Tool reported an error.", duration,
            )
        return ToolCallResult.ok(request, text, duration)

    @staticmethod
    def _render_content(raw: Any) -> str:
        parts: list[str] = []
        for item in getattr(raw, "content", None) or []:
            text = getattr(item, "text", None)
            parts.append(text if isinstance(text, str) else str(item))
        if not parts:
            structured = getattr(raw, "structuredContent", None)
            if structured is not None:
                return json.dumps(structured, ensure_ascii=False, default=str)
        return "\n".join(parts)

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_result_chars:
            return text
        return text[:self.max_result_chars] + f"\n... [truncated at {self.max_result_chars} chars]"
