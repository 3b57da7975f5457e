"""OpenAI chat completions backend.

Streams chunked deltas and reassembles tool-call argument fragments, which
arrive keyed by their position in the tool call list.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

from agent_engine.ai.providers.base import (
    Capabilities,
    LanguageModel,
    ProviderStream,
    ToolCallBuilder,
    drop_unanswered_tool_calls,
    normalize_finish_reason,
    usage_increment,
)
from agent_engine.config import ProviderConfig
from agent_engine.core.errors import ProviderError
from agent_engine.core.events import (
    FinishReasonEvent,
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

PROVIDER_NAME = "openai"

# Reasoning models take max_completion_tokens and ignore temperature
MAX_COMPLETION_TOKENS_MODELS = frozenset(
    {
        "o1", "o1-mini", "o1-preview", "o3", "o3-mini",
        "gpt-5", "gpt-5-mini", "gpt-5-nano", "gpt-5-chat-latest",
    }
)

VISION_MODELS = frozenset({"gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4-vision-preview"})

CONTEXT_WINDOWS = {
    "gpt-5": 400_000,
    "gpt-5-mini": 400_000,
    "gpt-5-nano": 400_000,
    "gpt-4": 8192,
    "gpt-4-32k": 32_768,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-3.5-turbo": 16_385,
}

OUTPUT_LIMITS = {
    "gpt-5": 128_000,
    "gpt-5-mini": 128_000,
    "gpt-5-nano": 128_000,
    "gpt-4": 4096,
    "gpt-4o": 4096,
    "gpt-4o-mini": 16_384,
    "gpt-3.5-turbo": 4096,
}


class OpenAIModel(LanguageModel):
    def __init__(self, config: ProviderConfig, client: Any = None):
        self._config = config
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
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
            supports_vision=self.model in VISION_MODELS,
            max_context_tokens=CONTEXT_WINDOWS.get(self.model, 8192),
            max_output_tokens=OUTPUT_LIMITS.get(self.model, 4096),
        )

    def _build_kwargs(self, request: GenerateRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": convert_messages(request.messages, request.system),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        max_tokens = request.max_tokens or self._config.max_tokens
        reasoning_model = self.model in MAX_COMPLETION_TOKENS_MODELS
        if max_tokens:
            kwargs["max_completion_tokens" if reasoning_model else "max_tokens"] = max_tokens
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        if temperature is not None and not reasoning_model:
            kwargs["temperature"] = temperature
        if request.tools:
            kwargs["tools"] = [convert_tool(t) for t in request.tools]
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def stream(self, request: GenerateRequest) -> ProviderStream:
        kwargs = self._build_kwargs(request)
        logger.debug("api_request", model=self.model, message_count=len(kwargs["messages"]))
        try:
            raw = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("api_request_failed", model=self.model, error=str(e))
            raise ProviderError(f"openai stream error: {e}", PROVIDER_NAME, e) from e
        return ProviderStream(self._events(raw), PROVIDER_NAME)

    async def _events(self, raw: Any) -> AsyncIterator[StreamEvent]:
        builders: dict[int, ToolCallBuilder] = {}
        announced: set[int] = set()
        text_parts: list[str] = []
        started = False
        reported = Usage()
        finish_reason = ""

        async for chunk in raw:
            if not started:
                started = True
                yield StreamStartEvent(
                    model=chunk.model or self.model,
                    request_id=chunk.id or "",
                    system_fingerprint=getattr(chunk, "system_fingerprint", None) or "",
                )

            if chunk.usage is not None:
                increment = usage_increment(_convert_usage(chunk.usage), reported)
                if not increment.is_zero():
                    reported = reported + increment
                    yield UsageEvent(usage=increment)

            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta

            if delta is not None and delta.content:
                text_parts.append(delta.content)
                yield TextDeltaEvent(delta=delta.content, index=choice.index or 0)

            for tc in (delta.tool_calls if delta is not None else None) or []:
                index = tc.index
                builder = builders.get(index)
                if builder is None:
                    builder = builders[index] = ToolCallBuilder(id=tc.id or "", name="")
                if tc.id and not builder.id:
                    builder.id = tc.id
                if tc.function is not None and tc.function.name:
                    builder.name = tc.function.name
                if index not in announced and builder.name:
                    if not builder.id:
                        builder.id = f"call_{index}"
                    announced.add(index)
                    yield ToolCallStartEvent(id=builder.id, name=builder.name, index=index)
                if tc.function is not None and tc.function.arguments:
                    builder.arguments += tc.function.arguments
                    yield ToolCallDeltaEvent(
                        id=builder.id, argument_delta=tc.function.arguments, index=index
                    )

            if choice.finish_reason:
                finish_reason = normalize_finish_reason(choice.finish_reason)
                yield FinishReasonEvent(reason=finish_reason)

        if text_parts:
            yield TextCompleteEvent(full_text="".join(text_parts))

        for index in sorted(builders):
            builder = builders[index]
            if not builder.id:
                builder.id = f"call_{index}"
            yield ToolCallCompleteEvent(tool_call=builder.build(), index=index)

        yield StreamEndEvent(finish_reason=finish_reason or FinishReason.STOP, usage=reported)

    async def close(self) -> None:
        await self._client.close()


def _convert_usage(usage: Any) -> Usage:
    completion_details = getattr(usage, "completion_tokens_details", None)
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    return Usage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
        reasoning_tokens=(getattr(completion_details, "reasoning_tokens", None) or 0),
        cached_input_tokens=(getattr(prompt_details, "cached_tokens", None) or 0),
    )


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
    """Convert canonical messages to chat completion messages.

    A tool message fans out into one ``tool`` message per result. Tool calls
    without a result are left out.
    """
    result: list[dict[str, Any]] = []
    if system:
        result.append({"role": "system", "content": system})

    for msg in drop_unanswered_tool_calls(messages):
        if msg.role == Role.TOOL:
            for tr in msg.tool_results:
                result.append({"role": "tool", "tool_call_id": tr.tool_call_id, "content": tr.content})
            continue

        entry: dict[str, Any] = {"role": str(msg.role), "content": msg.content}
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            entry["content"] = msg.content or None
            entry["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in msg.tool_calls
            ]
        result.append(entry)

    return result
