"""Google Gemini backend using the google-genai SDK.

The SDK yields whole ``GenerateContentResponse`` chunks from an async
iterator. Function calls arrive complete inside a chunk, usually without an
id, so unique ids are synthesized. Function responses sent back must name
the function, which is recovered from the matching call in history.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, AsyncIterator

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from agent_engine.ai.providers.base import (
    Capabilities,
    LanguageModel,
    ProviderStream,
    drop_unanswered_tool_calls,
    normalize_finish_reason,
    usage_increment,
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
    ToolCallStartEvent,
    UsageEvent,
)
from agent_engine.core.models import GenerateRequest, Message, ToolCall, ToolDeclaration, Usage
from agent_engine.core.types import FinishReason, Role
from agent_engine.log import get_logger

logger = get_logger(__name__)

PROVIDER_NAME = "gemini"
UNKNOWN_FUNCTION_NAME = "unknown"

_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
}

_SCHEMA_TYPES = {
    "string": types.Type.STRING,
    "number": types.Type.NUMBER,
    "integer": types.Type.INTEGER,
    "boolean": types.Type.BOOLEAN,
    "array": types.Type.ARRAY,
    "object": types.Type.OBJECT,
}

# Most specific prefix first
CONTEXT_WINDOWS = (
    ("gemini-1.5-pro", 2_097_152),
    ("gemini-1.5-flash", 1_048_576),
    ("gemini-2.0-flash", 1_048_576),
    ("gemini-2.5", 1_048_576),
    ("gemini-1.0-pro", 32_768),
    ("gemini-pro", 32_768),
)

OUTPUT_LIMITS = (
    ("gemini-2.5", 65_536),
    ("gemini-1.0-pro", 2048),
    ("gemini-pro", 2048),
)


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _lookup(table: tuple[tuple[str, int], ...], model: str, default: int) -> int:
    for prefix, value in table:
        if model.startswith(prefix):
            return value
    return default


def convert_finish_reason(reason: Any) -> str:
    """Map a Gemini finish reason enum (or its name) onto canonical names."""
    if reason is None:
        return ""
    name = str(getattr(reason, "value", reason))
    if not name or name == "FINISH_REASON_UNSPECIFIED":
        return ""
    if name in _FINISH_REASONS:
        return str(_FINISH_REASONS[name])
    return normalize_finish_reason(name.lower())


class GeminiModel(LanguageModel):
    def __init__(self, config: ProviderConfig, client: Any = None):
        self._config = config
        if client is None:
            http_options = types.HttpOptions(
                base_url=config.base_url,
                timeout=config.timeout * 1000,
            )
            client = genai.Client(api_key=config.api_key, http_options=http_options)
        self._client = client

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
            supports_vision=self.model.startswith(("gemini-1.5", "gemini-2")),
            max_context_tokens=_lookup(CONTEXT_WINDOWS, self.model, 32_768),
            max_output_tokens=_lookup(OUTPUT_LIMITS, self.model, 8192),
        )

    def _build_config(self, request: GenerateRequest, system: str) -> types.GenerateContentConfig:
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        fields: dict[str, Any] = {
            "temperature": temperature,
            "max_output_tokens": request.max_tokens or self._config.max_tokens or None,
        }
        if system:
            fields["system_instruction"] = system
        if request.tools:
            fields["tools"] = [
                types.Tool(function_declarations=[convert_tool(t) for t in request.tools])
            ]
        return types.GenerateContentConfig(**fields)

    async def stream(self, request: GenerateRequest) -> ProviderStream:
        contents, system = convert_messages(request.messages, request.system)
        config = self._build_config(request, system)
        logger.debug("api_request", model=self.model, message_count=len(contents))
        try:
            raw = await self._client.aio.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as e:
            logger.error("api_request_failed", model=self.model, error=str(e))
            raise ProviderError(f"gemini stream error: {e}", PROVIDER_NAME, e) from e
        return ProviderStream(self._events(raw), PROVIDER_NAME)

    async def _events(self, raw: AsyncIterator[Any]) -> AsyncIterator[StreamEvent]:
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        started = False
        tool_index = 0
        reported = Usage()
        finish_reason = ""

        async for chunk in raw:
            if not started:
                started = True
                yield StreamStartEvent(
                    model=getattr(chunk, "model_version", None) or self.model,
                    request_id=getattr(chunk, "response_id", None) or "",
                )

            candidate = chunk.candidates[0] if chunk.candidates else None
            content = candidate.content if candidate is not None else None

            for part in (content.parts if content is not None else None) or []:
                if part.function_call is not None:
                    fc = part.function_call
                    call = ToolCall(
                        id=fc.id or new_tool_call_id(),
                        name=fc.name or UNKNOWN_FUNCTION_NAME,
                        arguments=dict(fc.args or {}),
                    )
                    yield ToolCallStartEvent(id=call.id, name=call.name, index=tool_index)
                    yield ToolCallCompleteEvent(tool_call=call, index=tool_index)
                    tool_index += 1
                elif part.text:
                    if getattr(part, "thought", None):
                        reasoning_parts.append(part.text)
                        yield ReasoningDeltaEvent(delta=part.text)
                    else:
                        text_parts.append(part.text)
                        yield TextDeltaEvent(delta=part.text)

            if chunk.usage_metadata is not None:
                increment = usage_increment(_convert_usage(chunk.usage_metadata), reported)
                if not increment.is_zero():
                    reported = reported + increment
                    yield UsageEvent(usage=increment)

            reason = convert_finish_reason(candidate.finish_reason if candidate is not None else None)
            if reason:
                # Gemini reports STOP for turns that end in function calls
                if tool_index and reason == FinishReason.STOP:
                    reason = FinishReason.TOOL_CALLS
                finish_reason = reason
                yield FinishReasonEvent(reason=reason)

        if reasoning_parts:
            yield ReasoningCompleteEvent(full_reasoning="".join(reasoning_parts))
        if text_parts:
            yield TextCompleteEvent(full_text="".join(text_parts))
        yield StreamEndEvent(finish_reason=finish_reason or FinishReason.STOP, usage=reported)


def _convert_usage(metadata: Any) -> Usage:
    return Usage(
        prompt_tokens=metadata.prompt_token_count or 0,
        completion_tokens=metadata.candidates_token_count or 0,
        total_tokens=metadata.total_token_count or 0,
        reasoning_tokens=getattr(metadata, "thoughts_token_count", None) or 0,
        cached_input_tokens=getattr(metadata, "cached_content_token_count", None) or 0,
    )


def convert_schema(schema: dict[str, Any]) -> types.Schema:
    """Convert a JSON schema fragment to a Gemini ``Schema``."""
    fields: dict[str, Any] = {}
    type_name = schema.get("type")
    if isinstance(type_name, str) and type_name in _SCHEMA_TYPES:
        fields["type"] = _SCHEMA_TYPES[type_name]
    if isinstance(schema.get("description"), str):
        fields["description"] = schema["description"]
    if isinstance(schema.get("enum"), list):
        fields["enum"] = [str(v) for v in schema["enum"]]
    if isinstance(schema.get("items"), dict):
        fields["items"] = convert_schema(schema["items"])
    if isinstance(schema.get("properties"), dict):
        fields["properties"] = {
            name: convert_schema(prop)
            for name, prop in schema["properties"].items()
            if isinstance(prop, dict)
        }
    if isinstance(schema.get("required"), list):
        fields["required"] = [r for r in schema["required"] if isinstance(r, str)]
    return types.Schema(**fields)


def convert_tool(tool: ToolDeclaration) -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=tool.name,
        description=tool.description,
        parameters=convert_schema({**(tool.parameters or {}), "type": "object"}),
    )


def function_name_for(tool_call_id: str, messages: list[Message]) -> str:
    """Name of the function a tool call id belongs to, searching newest first."""
    for msg in reversed(messages):
        for tc in msg.tool_calls:
            if tc.id == tool_call_id:
                return tc.name
    return UNKNOWN_FUNCTION_NAME


def _function_response(content: str, is_error: bool) -> dict[str, Any]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict) and not is_error:
        return parsed
    return {"error" if is_error else "result": content}


def convert_messages(messages: list[Message], system: str = "") -> tuple[list[types.Content], str]:
    """Convert canonical messages to Gemini contents.

    System messages join the system instruction. Assistant turns use the
    ``model`` role; tool results become ``user`` turns of function responses.
    Consecutive turns with the same role are merged.
    """
    system_parts = [system] if system else []
    messages = drop_unanswered_tool_calls(messages)
    contents: list[types.Content] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
            continue

        parts: list[types.Part] = []
        if msg.content:
            parts.append(types.Part.from_text(text=msg.content))
        for tc in msg.tool_calls:
            parts.append(types.Part.from_function_call(name=tc.name, args=tc.arguments or {}))
        for tr in msg.tool_results:
            parts.append(
                types.Part.from_function_response(
                    name=function_name_for(tr.tool_call_id, messages),
                    response=_function_response(tr.content, tr.is_error),
                )
            )

        if not parts:
            continue
        role = "model" if msg.role == Role.ASSISTANT else "user"
        if contents and contents[-1].role == role:
            contents[-1].parts.extend(parts)
        else:
            contents.append(types.Content(role=role, parts=parts))

    return contents, "\n\n".join(system_parts)
