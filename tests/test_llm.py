"""Tests for the chat-completion clients."""

import json
from unittest.mock import AsyncMock

import httpx
import ollama
import pytest

from conftest import run
from khodkar.analysis.config import LLMConfig
from khodkar.analysis.errors import LLMCallError
from khodkar.analysis.llm import (
    ChatClient,
    OllamaChatClient,
    OpenAIChatClient,
    _reason_for_status,
    build_chat_client,
)

TOOLS = [{"type": "function", "function": {"name": "read_file", "parameters": {"type": "object", "properties": {}}}}]


def _completion(content="", tool_calls=None, finish_reason="stop"):
    message = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message, "finish_reason": finish_reason}]}


def _client(llm_config, handler, max_retries=2):
    return OpenAIChatClient(
        llm_config,
        max_retries=max_retries,
        temperature=0.2,
        retry_backoff=0,
        transport=httpx.MockTransport(handler),
    )


def _complete(client):
    async def _go():
        try:
            return await client.complete([{"role": "user", "content": "hi"}], TOOLS)
        finally:
            await client.close()

    return run(_go())


# ═══════════════════════════════════════════════════════════════
# OpenAI-compatible Client
# ═══════════════════════════════════════════════════════════════

class TestOpenAIChatClient:
    """Tests for request shape, response parsing and error mapping."""

    def test_request_and_tool_call_parsing(self, llm_config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_completion(
                content="Reading.",
                tool_calls=[{
                    "id": "abc",
                    "type": "function",
                    "function": {"name": "read_file", "arguments": '{"path": "a.py"}'},
                }],
                finish_reason="tool_calls",
            ))

        response = _complete(_client(llm_config, handler))
        assert response.content == "Reading."
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].id == "abc"
        assert response.tool_calls[0].arguments == {"path": "a.py"}

        request = seen[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "test-model"
        assert body["tools"] == TOOLS
        assert body["temperature"] == 0.2

    def test_missing_call_ids_synthesized(self, llm_config):
        def handler(request):
            return httpx.Response(200, json=_completion(tool_calls=[
                {"function": {"name": "read_file", "arguments": {"path": "a.py"}}},
                {"function": {"name": "read_file", "arguments": ""}},
            ]))

        response = _complete(_client(llm_config, handler))
        assert [c.id for c in response.tool_calls] == ["call_0", "call_1"]
        assert response.tool_calls[1].arguments == {}

    def test_undecodable_arguments_kept_raw(self, llm_config):
        def handler(request):
            return httpx.Response(200, json=_completion(tool_calls=[
                {"id": "x", "function": {"name": "read_file", "arguments": "path=a.py"}},
            ]))

        response = _complete(_client(llm_config, handler))
        assert response.tool_calls[0].arguments == {"_raw": "path=a.py"}

    def test_content_parts_joined(self, llm_config):
        def handler(request):
            return httpx.Response(200, json=_completion(content=[{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]))

        assert _complete(_client(llm_config, handler)).content == "ab"

    @pytest.mark.parametrize("status,reason", [(401, "auth"), (403, "auth"), (429, "rate_limit"), (400, "bad_request"), (500, "server")])
    def test_error_status_mapping(self, llm_config, status, reason):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status, text="nope")

        with pytest.raises(LLMCallError) as exc:
            _complete(_client(llm_config, handler))
        assert exc.value.reason == reason
        assert exc.value.status_code == status
        assert len(calls) == 1

    def test_transient_status_retried(self, llm_config):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json=_completion(content="ok"))

        assert _complete(_client(llm_config, handler)).content == "ok"
        assert len(calls) == 2

    def test_transient_status_exhausts_retries(self, llm_config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        with pytest.raises(LLMCallError) as exc:
            _complete(_client(llm_config, handler, max_retries=1))
        assert exc.value.status_code == 502
        assert len(calls) == 2

    def test_network_failure(self, llm_config):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(LLMCallError) as exc:
            _complete(_client(llm_config, handler, max_retries=1))
        assert exc.value.reason == "network"
        assert "unreachable" in str(exc.value)

    def test_unexpected_body(self, llm_config):
        def handler(request):
            return httpx.Response(200, json={"error": "no choices"})

        with pytest.raises(LLMCallError) as exc:
            _complete(_client(llm_config, handler))
        assert exc.value.reason == "protocol"

    def test_reason_for_status(self):
        assert _reason_for_status(401) == "auth"
        assert _reason_for_status(429) == "rate_limit"
        assert _reason_for_status(503) == "server"
        assert _reason_for_status(422) == "bad_request"


# ═══════════════════════════════════════════════════════════════
# Ollama Client
# ═══════════════════════════════════════════════════════════════

class TestOllamaChatClient:
    """Tests for message conversion and error mapping of the Ollama client."""

    @pytest.fixture
    def client(self):
        llm = LLMConfig(base_url="http://localhost:11434", model="qwen3:32b", provider="ollama", max_steps=10)
        return OllamaChatClient(llm, max_retries=1, retry_backoff=0)

    def test_message_conversion(self, client):
        assistant = {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}}],
        }
        converted = client._to_ollama(assistant)
        assert converted["content"] == ""
        assert converted["tool_calls"][0]["function"]["arguments"] == {"path": "a.py"}

        tool = {"role": "tool", "tool_call_id": "c1", "name": "read_file", "content": "data"}
        assert client._to_ollama(tool) == {"role": "tool", "content": "data", "tool_name": "read_file"}

    def test_parse_assigns_ids(self, client):
        raw = {
            "message": {"content": "", "tool_calls": [
                {"function": {"name": "read_file", "arguments": {"path": "a.py"}}},
                {"function": {"name": "list_directory", "arguments": {"path": "."}}},
            ]},
            "done_reason": "stop",
        }
        response = client._parse(raw)
        assert [c.id for c in response.tool_calls] == ["call_1", "call_2"]
        assert response.tool_calls[1].arguments == {"path": "."}
        assert response.finish_reason == "stop"

    def test_response_error_mapped(self, client):
        client._client.chat = AsyncMock(side_effect=ollama.ResponseError("model not found", 404))
        with pytest.raises(LLMCallError) as exc:
            run(client.complete([{"role": "user", "content": "hi"}]))
        assert exc.value.status_code == 404
        assert exc.value.reason == "bad_request"
        assert client._client.chat.await_count == 1

    def test_connection_error_retried(self, client):
        client._client.chat = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(LLMCallError) as exc:
            run(client.complete([{"role": "user", "content": "hi"}]))
        assert exc.value.reason == "network"
        assert client._client.chat.await_count == 2

    def test_close_unloads_model(self, client):
        client._client.generate = AsyncMock()
        run(client.close())
        client._client.generate.assert_awaited_once_with(model="qwen3:32b", prompt="", keep_alive=0)


class TestBuildChatClient:

    def test_base_client_is_abstract(self):
        with pytest.raises(TypeError):
            ChatClient()

    def test_provider_selects_client(self, cfg, llm_config):
        assert isinstance(build_chat_client(llm_config, cfg), OpenAIChatClient)
        ollama_llm = llm_config.model_copy(update={"provider": "ollama"})
        assert isinstance(build_chat_client(ollama_llm, cfg), OllamaChatClient)
