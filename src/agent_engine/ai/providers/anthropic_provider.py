"""Anthropic Messages API backend using the official SDK."""

from __future__ import annotations

from typing import Any, AsyncIterator

import anthropic

from agent_engine.ai.providers.base import (
    Capabilities,
    LanguageModel,
    ProviderStream,
    ToolCallBuilder,
    drop_unanswered_tool_calls,
    normalize_finish_reason,
)
from agent_engine.config import ProviderConfig
from agent_engine.core.errors import ProviderError
from agent_engine.core.events import (
    FinishReasonEvent,
    ReasoningCompleteEvent,
    ReasoningDeltaEvent,
    StreamEndEvent,
    StreamEvent,
    StreamStartEvent,
    TextCompleteEvent,
    TextDeltaEvent,
    ToolCallCompleteEvent,
    ToolCallDeltaEvent,
    ToolCallStartEvent,
    UsageEvent,
)
from agent_engine.core.models import GenerateRequest, Message, ToolDeclaration, Usage
from agent_engine.core.types import FinishReason, Role
from agent_engine.log import get_logger

logger = get_logger(__name__)

PROVIDER_NAME = "anthropic"
CONTEXT_WINDOW = 200_000


def max_output_tokens(model: str) -> int:
    # 3.5 generation and newer allow 8192 output tokens
    if "claude-3-5" in model or "claude-4" in model or "-4-" in model:
        return 8192
    return 4096


class AnthropicModel(LanguageModel):
    """Streams server-sent content blocks and folds them into canonical events."""

    def __init__(self, config: ProviderConfig, client: Any = None):
        self._config = config
        self._client = client or anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAME

    @property
    def model(self) -> str:
        return self._config.model

    def capabilities(self) -> Capabilities:
        return Capabilities(
            supports_tools=True,
            supports_streaming=True,
            supports_vision=True,
            max_context_tokens=CONTEXT_WINDOW,
            max_output_tokens=max_output_tokens(self.model),
        )

    def _build_kwargs(self, request: GenerateRequest) -> dict[str, Any]:
        messages, system = convert_messages(request.messages, request.system)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens or self._config.max_tokens or 4096,
            "messages": messages,
        }
        if system:
            if self._config.cache_system_prompt:
                kwargs["system"] = [
                    {"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}
                ]
            else:
                kwargs["system"] = system
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        if temperature is not None:
            kwargs["temperature"] = temperature
        if request.tools:
            kwargs["tools"] = [convert_tool(t) for t in request.tools]
        return kwargs

    async def stream(self, request: GenerateRequest) -> ProviderStream:
        kwargs = self._build_kwargs(request)
        logger.debug("api_request", model=self.model, message_count=len(kwargs["messages"]))
        try:
            raw = await self._client.messages.create(**kwargs, stream=True)
        except anthropic.APIError as e:
            logger.error("api_request_failed", model=self.model, error=str(e))
            raise ProviderError(f"anthropic stream error: {e}", PROVIDER_NAME, e) from e
        return ProviderStream(self._events(raw), PROVIDER_NAME)

    async def _events(self, raw: Any) -> AsyncIterator[StreamEvent]:
        builders: dict[int, ToolCallBuilder] = {}
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        started = False
        reported = Usage()
        finish_reason = ""

        async for event in raw:
            etype = event.type

            if etype == "message_start":
                message = event.message
                if not started:
                    started = True
                    yield StreamStartEvent(model=message.model or self.model, request_id=message.id or "")
                prompt = message.usage.input_tokens or 0
                completion = message.usage.output_tokens or 0
                initial = Usage(
                    prompt_tokens=prompt,
                    completion_tokens=completion,
                    total_tokens=prompt + completion,
                    cached_input_tokens=getattr(message.usage, "cache_read_input_tokens", None) or 0,
                )
                reported = reported + initial
                yield UsageEvent(usage=initial)

            elif etype == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    builders[event.index] = ToolCallBuilder(id=block.id, name=block.name)
                    yield ToolCallStartEvent(id=block.id, name=block.name, index=event.index)

            elif etype == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    text_parts.append(delta.text)
                    yield TextDeltaEvent(delta=delta.text, index=event.index)
                elif delta.type == "input_json_delta":
                    builder = builders.get(event.index)
                    if builder is not None:
                        builder.arguments += delta.partial_json
                        yield ToolCallDeltaEvent(
                            id=builder.id, argument_delta=delta.partial_json, index=event.index
                        )
                elif delta.type == "thinking_delta":
                    reasoning_parts.append(delta.thinking)
                    yield ReasoningDeltaEvent(delta=delta.thinking)

            elif etype == "content_block_stop":
                builder = builders.pop(event.index, None)
                if builder is not None:
                    yield ToolCallCompleteEvent(tool_call=builder.build(), index=event.index)

            elif etype == "message_delta":
                # output_tokens here is cumulative for the message
                output = event.usage.output_tokens or 0
                increment = output - reported.completion_tokens
                if increment > 0:
                    step = Usage(completion_tokens=increment, total_tokens=increment)
                    reported = reported + step
                    yield UsageEvent(usage=step)
                if event.delta.stop_reason:
                    finish_reason = normalize_finish_reason(event.delta.stop_reason)
                    yield FinishReasonEvent(reason=finish_reason)

            elif etype == "message_stop":
                if reasoning_parts:
                    yield ReasoningCompleteEvent(full_reasoning="".join(reasoning_parts))
                if text_parts:
                    yield TextCompleteEvent(full_text="".join(text_parts))
                yield StreamEndEvent(finish_reason=finish_reason or FinishReason.STOP, usage=reported)

    async def close(self) -> None:
        await self._client.close()


def convert_tool(tool: ToolDeclaration) -> dict[str, Any]:
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": tool.parameters or {"type": "object", "properties": {}},
    }


def convert_messages(messages: list[Message], system: str = "") -> tuple[list[dict[str, Any]], str]:
    """Convert canonical messages to Anthropic content-block messages.

    System messages are merged into the system prompt. Tool messages become
    user turns carrying ``tool_result`` blocks, and consecutive turns with the
    same role are merged since the API requires alternating roles. Tool calls
    without a result are left out.
    """
    system_parts = [system] if system else []
    messages = drop_unanswered_tool_calls(messages)
    converted: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
            continue

        blocks: list[dict[str, Any]] = []
        if msg.role == Role.TOOL:
            role = "user"
            for result in msg.tool_results:
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": result.tool_call_id,
                        "content": result.content,
                        "is_error": result.is_error,
                    }
                )
        elif msg.role == Role.ASSISTANT:
            role = "assistant"
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
        else:
            role = "user"
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})

        if not blocks:
            continue
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    return converted, "\n\n".join(system_parts)
