"""Ollama backend over the local HTTP API.

Ollama streams newline-delimited JSON objects, each carrying a whole message
fragment. Tool calls arrive complete in a single chunk, so no argument
assembly is needed.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from agent_engine.ai.providers.base import (
    Capabilities,
    LanguageModel,
    ProviderStream,
    normalize_finish_reason,
)
from agent_engine.config import ProviderConfig
from agent_engine.core.errors import ProviderError
from agent_engine.core.events import (
    FinishReasonEvent,
    ProviderMetadataEvent,
    StreamEndEvent,
    StreamEvent,
    StreamStartEvent,
    TextCompleteEvent,
    TextDeltaEvent,
    ToolCallCompleteEvent,
    ToolCallStartEvent,
    UsageEvent,
)
from agent_engine.core.models import GenerateRequest, Message, ToolCall, ToolDeclaration, Usage
from agent_engine.core.types import FinishReason, Role
from agent_engine.log import get_logger

logger = get_logger(__name__)

PROVIDER_NAME = "ollama"
DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_CONTEXT_TOKENS = 8192


class OllamaModel(LanguageModel):
    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url or DEFAULT_BASE_URL,
            timeout=config.timeout,
        )

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAME

    @property
    def model(self) -> str:
        return self._config.model

    def capabilities(self) -> Capabilities:
        # Tool support varies per local model; the API accepts tools either way.
        return Capabilities(
            supports_tools=True,
            supports_streaming=True,
            supports_vision=False,
            max_context_tokens=DEFAULT_CONTEXT_TOKENS,
            max_output_tokens=self._config.max_tokens,
        )

    def _build_payload(self, request: GenerateRequest) -> dict[str, Any]:
        options: dict[str, Any] = {}
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        if temperature is not None:
            options["temperature"] = temperature
        max_tokens = request.max_tokens or self._config.max_tokens
        if max_tokens:
            options["num_predict"] = max_tokens

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": convert_messages(request.messages, request.system),
            "stream": True,
            "options": options,
        }
        if request.tools:
            payload["tools"] = [convert_tool(t) for t in request.tools]
        return payload

    async def stream(self, request: GenerateRequest) -> ProviderStream:
        payload = self._build_payload(request)
        logger.debug("api_request", model=self.model, message_count=len(payload["messages"]))
        try:
            http_request = self._client.build_request("POST", "/api/chat", json=payload)
            response = await self._client.send(http_request, stream=True)
        except httpx.TimeoutException as e:
            raise ProviderError(f"ollama request timeout: {e}", PROVIDER_NAME, e) from e
        except httpx.RequestError as e:
            raise ProviderError(f"ollama connection error: {e}", PROVIDER_NAME, e) from e

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error("api_request_failed", model=self.model, status=response.status_code)
            raise ProviderError(
                f"ollama API error: {response.status_code} - {body[:500]}", PROVIDER_NAME
            )

        return ProviderStream(self._events(response), PROVIDER_NAME)

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        text_parts: list[str] = []
        started = False
        tool_index = 0
        try:
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError as e:
                    raise ProviderError(f"ollama stream parse error: {e}", PROVIDER_NAME, e) from e

                if "error" in chunk:
                    raise ProviderError(f"ollama stream error: {chunk['error']}", PROVIDER_NAME)

                if not started:
                    started = True
                    yield StreamStartEvent(model=chunk.get("model") or self.model)

                message = chunk.get("message") or {}
                content = message.get("content") or ""
                if content:
                    text_parts.append(content)
                    yield TextDeltaEvent(delta=content)

                for raw_call in message.get("tool_calls") or []:
                    function = raw_call.get("function") or {}
                    name = function.get("name")
                    if not name:
                        continue
                    arguments = function.get("arguments") or {}
                    if isinstance(arguments, str):
                        try:
                            arguments = json.loads(arguments)
                        except json.JSONDecodeError:
                            logger.warning("tool_arguments_unparseable", tool_name=name)
                            arguments = {}
                    call = ToolCall(
                        id=raw_call.get("id") or f"call_{tool_index}",
                        name=name,
                        arguments=arguments if isinstance(arguments, dict) else {},
                    )
                    yield ToolCallStartEvent(id=call.id, name=call.name, index=tool_index)
                    yield ToolCallCompleteEvent(tool_call=call, index=tool_index)
                    tool_index += 1

                if chunk.get("done"):
                    prompt = chunk.get("prompt_eval_count") or 0
                    completion = chunk.get("eval_count") or 0
                    usage = Usage(
                        prompt_tokens=prompt,
                        completion_tokens=completion,
                        total_tokens=prompt + completion,
                    )
                    if not usage.is_zero():
                        yield UsageEvent(usage=usage)

                    # Ollama reports "stop" even when the turn requested tools
                    reason = normalize_finish_reason(chunk.get("done_reason")) or FinishReason.STOP
                    if tool_index and reason == FinishReason.STOP:
                        reason = FinishReason.TOOL_CALLS
                    yield FinishReasonEvent(reason=reason)

                    durations = {
                        k: chunk[k] for k in ("total_duration", "load_duration", "eval_duration") if k in chunk
                    }
                    if durations:
                        yield ProviderMetadataEvent(metadata=durations)
                    if text_parts:
                        yield TextCompleteEvent(full_text="".join(text_parts))
                    yield StreamEndEvent(finish_reason=reason, usage=usage)
                    break
        finally:
            await response.aclose()

    async def close(self) -> None:
        await self._client.aclose()


def convert_tool(tool: ToolDeclaration) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters or {"type": "object", "properties": {}},
        },
    }


def convert_messages(messages: list[Message], system: str = "") -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    if system:
        result.append({"role": "system", "content": system})

    for msg in messages:
        if msg.role == Role.TOOL:
            for tr in msg.tool_results:
                result.append({"role": "tool", "content": tr.content, "tool_call_id": tr.tool_call_id})
            continue

        entry: dict[str, Any] = {"role": str(msg.role), "content": msg.content}
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            entry["tool_calls"] = [
                {"function": {"name": tc.name, "arguments": tc.arguments}} for tc in msg.tool_calls
            ]
        result.append(entry)

    return result
