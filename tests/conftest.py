"""Shared fakes: scripted chat client and in-memory tool-server sessions."""

import asyncio
from types import SimpleNamespace

import pytest

from khodkar.analysis.agent.models import ModelResponse, ToolCallRequest
from khodkar.analysis.config import DEFAULT_CONFIG, Config, LLMConfig
from khodkar.analysis.llm import ChatClient
from khodkar.analysis.mcp import ToolServerConfig, ToolServerManager


def make_tool(name, description="", schema=None):
    if schema is None:
        schema = {"type": "object", "properties": {"path": {"type": "string"}}}
    return SimpleNamespace(name=name, description=description, inputSchema=schema)


def text_result(text, is_error=False):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)], isError=is_error)


def tool_call(name, call_id="call_1", **arguments):
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


def emission_text(*rules):
    import json
    return "Done.\n<business_rules>\n" + json.dumps({"businessRules": list(rules)}) + "\n</business_rules>"


def rule(rule_id="BR-001", **overrides):
    data = {
        "id": rule_id,
        "title": "Refund window",
        "description": "Refunds are accepted within 30 days of purchase.",
        "category": "Billing",
        "priority": "high",
        "userFacing": True,
        "sourceReferences": [{"filePath": "billing/refunds.py", "lineRange": {"start": 10, "end": 24}}],
    }
    data.update(overrides)
    return data


class FakeSession:
    """Stands in for an MCP ClientSession."""

    def __init__(self, tools=(), results=None, list_error=None, init_delay=0.0):
        self.tools = list(tools)
        self.results = dict(results or {})
        self.list_error = list_error
        self.init_delay = init_delay
        self.initialized = False
        self.calls = []

    async def initialize(self):
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        self.initialized = True

    async def list_tools(self):
        if self.list_error is not None:
            raise self.list_error
        return SimpleNamespace(tools=self.tools)

    async def call_tool(self, name, arguments):
        self.calls.append((name, dict(arguments)))
        outcome = self.results.get(name, text_result(f"{name} ok"))
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(arguments)
        return outcome


class FakeServers:
    """Session factory backed by FakeSession instances, recording teardown."""

    def __init__(self, sessions):
        self.sessions = dict(sessions)
        self.opened = []
        self.closed = []

    async def __call__(self, server, stack):
        session = self.sessions[server.name]
        if isinstance(session, BaseException):
            raise session
        self.opened.append(server.name)

        async def _close():
            self.closed.append(server.name)

        stack.push_async_callback(_close)
        return session

    def manager(self, init_timeout=5.0):
        configs = [ToolServerConfig(name=n, command="fake-server") for n in self.sessions]
        return ToolServerManager(configs, init_timeout=init_timeout, session_factory=self)


class ScriptedLLM(ChatClient):
    """Replays a fixed list of responses; an exception in the list is raised."""

    model = "scripted"

    def __init__(self, responses, repeat_last=False):
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.requests = []
        self.closed = False

    async def complete(self, messages, tools=None):
        self.requests.append((list(messages), list(tools or [])))
        if len(self.responses) > 1 or not self.repeat_last:
            item = self.responses.pop(0)
        else:
            item = self.responses[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return ModelResponse(content=item)
        return item

    async def close(self):
        self.closed = True


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def cfg():
    return Config(**DEFAULT_CONFIG)


@pytest.fixture
def llm_config():
    return LLMConfig(base_url="http://llm.local/v1", api_key="sk-test", model="test-model", max_steps=10)
