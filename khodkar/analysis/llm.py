"""Chat-completion clients used by the agent loop.

Two transports share one contract, ``complete(messages, tools)``:
an OpenAI-compatible HTTP endpoint (httpx) and an Ollama host (official
SDK). Both return a ``ModelResponse`` and raise ``LLMCallError`` for
anything that prevents a usable answer. Transient connection failures are
retried inside the client; everything else is reported immediately.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
import ollama

from .agent.emission import try_parse_json
from .agent.models import ModelResponse, ToolCallRequest
from .config import Config, LLMConfig
from .errors import LLMCallError

logger = logging.getLogger("khodkar.llm")

_TRANSIENT_STATUS = frozenset({502, 503, 504})


def _reason_for_status(status_code: int) -> str:
    if status_code in (401, 403):
        return "auth"
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "server"
    return "bad_request"


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    parsed = try_parse_json(raw) if isinstance(raw, str) else None
    if isinstance(parsed, dict):
        return parsed
    logger.warning(f"Undecodable tool-call arguments: {str(raw)[:200]}")
    return {"_raw": str(raw)}


class ChatClient(ABC):
    """Interface for chat-completion transports."""

    model: str

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        """Send the conversation and return the assistant turn."""

    async def close(self) -> None:
        return None


class OpenAIChatClient(ChatClient):
    """Client for any endpoint speaking the OpenAI chat-completions protocol."""

    def __init__(
        self,
        llm: LLMConfig,
        timeout: float = 300.0,
        max_retries: int = 2,
        temperature: float | None = None,
        retry_backoff: float = 1.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = llm.model
        self.max_tokens = llm.max_tokens
        self.max_retries = max_retries
        self.temperature = temperature
        self.retry_backoff = retry_backoff
        self.base_url = llm.base_url

        logger.info(f"Initializing OpenAI-compatible client for {self.base_url}, model: {self.model}, timeout: {timeout}s")
        self._client = httpx.AsyncClient(
            base_url=llm.base_url,
            headers={"Authorization": f"Bearer {llm.api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
        }
        if tools:
            payload["tools"] = tools
        if self.temperature is not None:
            payload["temperature"] = self.temperature

        last_err: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = await self._client.post("/chat/completions", json=payload)
            except httpx.TransportError as e:
                last_err = e
            else:
                if resp.status_code not in _TRANSIENT_STATUS:
                    return self._parse(resp)
                last_err = LLMCallError(
                    f"LLM endpoint returned HTTP {resp.status_code}",
                    reason="server", status_code=resp.status_code,
                )

            if attempt < self.max_retries:
                wait = self.retry_backoff * (attempt + 1)
                logger.warning(
                    f"Transient LLM error (attempt {attempt + 1}/{self.max_retries + 1}), "
                    f"retrying in {wait:.1f}s: {last_err}"
                )
                await asyncio.sleep(wait)

        if isinstance(last_err, LLMCallError):
            raise last_err
        raise LLMCallError(
            f"LLM endpoint {self.base_url} unreachable after {self.max_retries + 1} attempts: {last_err}",
            reason="network",
        ) from last_err

    def _parse(self, resp: httpx.Response) -> ModelResponse:
        if resp.status_code >= 400:
            detail = resp.text[:500]
            raise LLMCallError(
                f"LLM endpoint returned HTTP {resp.status_code}: {detail}",
                reason=_reason_for_status(resp.status_code),
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
            choice = data["choices"][0]
            message = choice["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMCallError(
                f"LLM endpoint returned an unexpected response body: {resp.text[:300]}",
                reason="protocol", status_code=resp.status_code,
            ) from e

        content = message.get("content") or ""
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") for part in content if isinstance(part, dict)
            )

        tool_calls = []
        for idx, tc in enumerate(message.get("tool_calls") or []):
            fn = tc.get("function") or {}
            tool_calls.append(ToolCallRequest(
                id=tc.get("id") or f"call_{idx}",
                name=fn.get("name") or "",
                arguments=_decode_arguments(fn.get("arguments")),
            ))

        return ModelResponse(
            content=content,
            tool_calls=tuple(tool_calls),
            finish_reason=choice.get("finish_reason"),
        )


class OllamaChatClient(ChatClient):
    """Wrapper around the official ollama.AsyncClient."""

    def __init__(
        self,
        llm: LLMConfig,
        timeout: float = 300.0,
        max_retries: int = 2,
        temperature: float | None = None,
        retry_backoff: float = 1.5,
    ) -> None:
        self.model = llm.model
        self.max_tokens = llm.max_tokens
        self.max_retries = max_retries
        self.temperature = temperature
        self.retry_backoff = retry_backoff
        self.host = llm.base_url
        self._call_counter = 0

        headers = {"Authorization": f"Bearer {llm.api_key}"} if llm.api_key else None
        logger.info(f"Initializing Ollama SDK client for host: {self.host}, model: {self.model}, timeout: {timeout}s")
        self._client = ollama.AsyncClient(host=self.host, timeout=timeout, headers=headers)

    async def close(self) -> None:
        """Unload the model from memory by setting keep_alive to 0."""
        try:
            logger.info(f"Unloading model {self.model}...")
            await self._client.generate(model=self.model, prompt="", keep_alive=0)
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            logger.warning(f"Failed to unload model: {e}")

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        options: dict[str, Any] = {"num_predict": self.max_tokens}
        if self.temperature is not None:
            options["temperature"] = self.temperature

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [self._to_ollama(m) for m in messages],
            "options": options,
        }
        if tools:
            kwargs["tools"] = tools

        last_err: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.chat(**kwargs)
                return self._parse(response)
            except ollama.ResponseError as e:
                logger.error(f"Ollama ResponseError (attempt {attempt + 1}): {e.error}")
                raise LLMCallError(
                    f"Ollama rejected the request: {e.error}",
                    reason=_reason_for_status(e.status_code or 500),
                    status_code=e.status_code,
                ) from e
            except (ConnectionError, httpx.TransportError) as e:
                last_err = e
                if attempt < self.max_retries:
                    wait = self.retry_backoff * (attempt + 1)
                    logger.warning(
                        f"Transient Ollama error (attempt {attempt + 1}/{self.max_retries + 1}), "
                        f"retrying in {wait:.1f}s: {e}"
                    )
                    await asyncio.sleep(wait)

        raise LLMCallError(
            f"Ollama connection failed after {self.max_retries + 1} attempts: {last_err}",
            reason="network",
        ) from last_err

    @staticmethod
    def _to_ollama(message: dict[str, Any]) -> dict[str, Any]:
        role = message["role"]
        out: dict[str, Any] = {"role": role, "content": message.get("content") or ""}
        if role == "assistant" and message.get("tool_calls"):
            out["tool_calls"] = [
                {
                    "function": {
                        "name": tc["function"]["name"],
                        "arguments": _decode_arguments(tc["function"]["arguments"]),
                    }
                }
                for tc in message["tool_calls"]
            ]
        elif role == "tool" and message.get("name"):
            out["tool_name"] = message["name"]
        return out

    def _parse(self, response: Any) -> ModelResponse:
        if hasattr(response, "model_dump"):
            data = response.model_dump()
        else:
            data = dict(response)
        message = data.get("message") or {}

        tool_calls = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            self._call_counter += 1
            tool_calls.append(ToolCallRequest(
                id=f"call_{self._call_counter}",
                name=fn.get("name") or "",
                arguments=_decode_arguments(fn.get("arguments")),
            ))

        return ModelResponse(
            content=message.get("content") or "",
            tool_calls=tuple(tool_calls),
            finish_reason=data.get("done_reason"),
        )


def build_chat_client(llm: LLMConfig, cfg: Config) -> ChatClient:
    if llm.provider == "ollama":
        return OllamaChatClient(
            llm,
            timeout=cfg.llm_timeout,
            max_retries=cfg.llm_max_retries,
            temperature=cfg.llm_temperature,
        )
    return OpenAIChatClient(
        llm,
        timeout=cfg.llm_timeout,
        max_retries=cfg.llm_max_retries,
        temperature=cfg.llm_temperature,
    )
