from __future__ import annotations

import logging
from typing import Any

from ..errors import DiscoveryError
from ..mcp import ToolServerManager
from .models import Tool

logger = logging.getLogger("khodkar.agent")


class ToolCatalog:
    """Flat registry of every tool offered by the connected tool servers.

    Populated once by ``discover()``; names are unique across servers and
    the first server to offer a name keeps it.
    """

    def __init__(self, manager: ToolServerManager) -> None:
        self.manager = manager
        self._tools: dict[str, Tool] = {}
        self.diagnostics: list[str] = []
        self._discovered = False

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    async def discover(self) -> list[Tool]:
        if self._discovered:
            return self.tools

        for server_name in self.manager.server_names:
            session = await self.manager.connect(server_name)
            try:
                listing = await session.list_tools()
            except Exception as e:
                raise DiscoveryError(
                    f"Tool server '{server_name}' failed to list tools: {e}",
                    server=server_name,
                ) from e

            for raw in getattr(listing, "tools", None) or []:
                tool = self._normalize(raw, server_name)
                existing = self._tools.get(tool.name)
                if existing is not None:
                    diagnostic = (
                        f"Tool '{tool.name}' from server '{server_name}' rejected: "
                        f"name already registered by server '{existing.server}'"
                    )
                    logger.warning(diagnostic)
                    self.diagnostics.append(diagnostic)
                    continue
                self._tools[tool.name] = tool

        self._discovered = True
        logger.info(
            f"Discovered {len(self._tools)} tools from {len(self.manager.server_names)} servers: "
            f"{', '.join(self._tools)}"
        )
        return self.tools

    def lookup(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def to_schema(self) -> list[dict[str, Any]]:
        return [tool.to_openai() for tool in self._tools.values()]

    @staticmethod
    def _normalize(raw: Any, server_name: str) -> Tool:
        name = getattr(raw, "name", None)
        if not isinstance(name, str) or not name.strip():
            raise DiscoveryError(
                f"Tool server '{server_name}' returned a tool without a name",
                server=server_name,
            )

        schema = getattr(raw, "inputSchema", None)
        if schema is None:
            schema = {"type": "object", "properties": {}}
        if not isinstance(schema, dict):
            raise DiscoveryError(
                f"Tool '{name}' from server '{server_name}' has a malformed input schema",
                server=server_name, tool=name,
            )
        if schema.get("type", "object") != "object":
            raise DiscoveryError(
                f"Tool '{name}' from server '{server_name}' input schema must describe an object, "
                f"got type {schema.get('type')!r}",
                server=server_name, tool=name,
            )
        if not isinstance(schema.get("properties", {}), dict):
            raise DiscoveryError(
                f"Tool '{name}' from server '{server_name}' has malformed schema properties",
                server=server_name, tool=name,
            )

        schema = dict(schema)
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return Tool(
            name=name.strip(),
            description=getattr(raw, "description", None) or "",
            input_schema=schema,
            server=server_name,
        )
