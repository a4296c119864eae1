"""Tool-server connections over the Model Context Protocol.

``ToolServerManager`` is the explicit lifecycle object for every external
tool server used during one analysis run: servers are connected lazily by
the tool catalog and released together by ``shutdown()``, which is safe to
call on any exit path and more than once.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from .config import Config
from .errors import DiscoveryError

logger = logging.getLogger("khodkar.mcp")

DIRECTORY_PLACEHOLDER = "{directory}"


@dataclass(frozen=True)
class ToolServerConfig:
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    cwd: str | None = None

    @classmethod
    def from_mapping(cls, name: str, raw: dict[str, Any], directory: str | Path) -> ToolServerConfig:
        if not isinstance(raw, dict) or not raw.get("command"):
            raise DiscoveryError(f"Tool server '{name}' has no command configured", server=name)
        target = str(directory)

        def _fill(value: str) -> str:
            return str(value).replace(DIRECTORY_PLACEHOLDER, target)

        env = raw.get("env")
        return cls(
            name=name,
            command=_fill(raw["command"]),
            args=tuple(_fill(a) for a in raw.get("args", [])),
            env={k: _fill(v) for k, v in env.items()} if env else None,
            cwd=_fill(raw["cwd"]) if raw.get("cwd") else None,
        )


def build_server_configs(cfg: Config, directory: str | Path) -> list[ToolServerConfig]:
    """Resolve the configured tool servers for one target directory."""
    return [
        ToolServerConfig.from_mapping(name, raw, directory)
        for name, raw in cfg.mcp_servers.items()
    ]


SessionFactory = Callable[[ToolServerConfig, AsyncExitStack], Awaitable[Any]]


async def open_stdio_session(server: ToolServerConfig, stack: AsyncExitStack) -> ClientSession:
    """Spawn a stdio tool server and return its (uninitialized) client session."""
    params = StdioServerParameters(
        command=server.command,
        args=list(server.args),
        env=server.env,
        cwd=server.cwd,
    )
    read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
    return await stack.enter_async_context(ClientSession(read_stream, write_stream))


class ToolServerManager:
    """Owns the connections to every configured tool server."""

    def __init__(
        self,
        servers: list[ToolServerConfig],
        init_timeout: float = 30.0,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._servers = {s.name: s for s in servers}
        self.init_timeout = init_timeout
        self._session_factory = session_factory or open_stdio_session
        self._stack: AsyncExitStack | None = None
        self._sessions: dict[str, Any] = {}
        self._closed = False

    # ── Public properties ──

    @property
    def server_names(self) -> list[str]:
        return list(self._servers)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def session(self, name: str) -> Any | None:
        return self._sessions.get(name)

    # ── Lifecycle ──

    async def connect(self, name: str) -> Any:
        """Connect and initialize one server; raises DiscoveryError on failure."""
        if self._closed:
            raise DiscoveryError(f"Tool server manager already shut down (server '{name}')", server=name)
        if name in self._sessions:
            return self._sessions[name]
        server = self._servers.get(name)
        if server is None:
            raise DiscoveryError(f"Unknown tool server '{name}'", server=name)

        if self._stack is None:
            self._stack = AsyncExitStack()
            await self._stack.__aenter__()

        logger.info(f"Connecting to tool server '{name}': {server.command} {' '.join(server.args)}")
        try:
            session = await self._session_factory(server, self._stack)
            await asyncio.wait_for(session.initialize(), timeout=self.init_timeout)
        except asyncio.TimeoutError as e:
            raise DiscoveryError(
                f"Tool server '{name}' did not initialize within {self.init_timeout}s",
                server=name,
            ) from e
        except DiscoveryError:
            raise
        except Exception as e:
            raise DiscoveryError(f"Tool server '{name}' is unreachable: {e}", server=name) from e

        self._sessions[name] = session
        logger.info(f"Tool server '{name}' connected")
        return session

    async def shutdown(self) -> None:
        """Release every connection. Subsequent calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        stack, self._stack = self._stack, None
        names = list(self._sessions)
        self._sessions.clear()
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning(f"Tool server shutdown reported an error: {e}")
        logger.info(f"Tool servers shut down: {', '.join(names) or 'none'}")

    async def __aenter__(self) -> ToolServerManager:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()
