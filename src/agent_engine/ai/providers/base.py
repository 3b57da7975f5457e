"""Language model abstraction and the canonical provider stream."""

from __future__ import annotations

import asyncio
import contextlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

from agent_engine.core.channel import EventChannel
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
    UsageEvent,
    WarningEvent,
)
from agent_engine.core.models import (
    GenerateRequest,
    GenerateResponse,
    Message,
    ProviderWarning,
    ToolCall,
    Usage,
)
from agent_engine.core.types import FinishReason
from agent_engine.log import get_logger

logger = get_logger(__name__)

STREAM_BUFFER_SIZE = 100

_FINISH_REASON_ALIASES = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "stop": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "length": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
    "refusal": FinishReason.CONTENT_FILTER,
}


def normalize_finish_reason(reason: str | None) -> str:
    """Map a vendor stop reason onto the canonical finish reason names.

    Unknown reasons pass through unchanged so nothing is silently lost.
    """
    if not reason:
        return ""
    return str(_FINISH_REASON_ALIASES.get(reason, reason))


def parse_tool_arguments(raw: str, tool_name: str = "") -> dict[str, Any]:
    """Decode accumulated argument fragments. Empty or malformed input yields ``{}``."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("tool_arguments_unparseable", tool_name=tool_name, error=str(e))
        return {}
    if not isinstance(parsed, dict):
        logger.warning("tool_arguments_not_object", tool_name=tool_name)
        return {}
    return parsed


@dataclass
class ToolCallBuilder:
    """Accumulates streamed argument fragments for one tool call."""

    id: str
    name: str
    arguments: str = ""

    def build(self) -> ToolCall:
        return ToolCall(
            id=self.id,
            name=self.name,
            arguments=parse_tool_arguments(self.arguments, self.name),
        )


@dataclass(frozen=True)
class Capabilities:
    """Static descriptor of what a model supports."""

    supports_tools: bool = True
    supports_streaming: bool = True
    supports_vision: bool = False
    max_context_tokens: int = 8192
    max_output_tokens: int = 4096


class ProviderStream:
    """Async iterator of canonical events backed by a producer task.

    The vendor source runs on its own task and feeds a bounded channel. Any
    exception it raises is recorded and exposed through ``err()`` once the
    iteration ends. A source that finishes cleanly without emitting a
    ``StreamEndEvent`` gets one synthesized from the last finish reason and
    the accumulated usage; duplicate stream ends are dropped.
    """

    def __init__(
        self,
        source: AsyncIterator[StreamEvent],
        provider_name: str = "",
        buffer_size: int = STREAM_BUFFER_SIZE,
    ):
        self._source = source
        self._provider_name = provider_name
        self._channel: EventChannel[StreamEvent] = EventChannel(maxsize=buffer_size)
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None

    def err(self) -> BaseException | None:
        return self._error

    def set_error(self, error: BaseException) -> None:
        self._error = error

    def _start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        saw_end = False
        finish_reason = ""
        usage = Usage()
        try:
            async for event in self._source:
                if isinstance(event, StreamEndEvent):
                    if saw_end:
                        continue
                    saw_end = True
                elif isinstance(event, FinishReasonEvent):
                    finish_reason = event.reason
                elif isinstance(event, UsageEvent):
                    usage = usage + event.usage
                await self._channel.send(event)

            if not saw_end:
                await self._channel.send(
                    StreamEndEvent(finish_reason=finish_reason or FinishReason.STOP, usage=usage)
                )
        except asyncio.CancelledError:
            raise
        except ProviderError as e:
            logger.error("provider_stream_error", provider=self._provider_name, error=str(e))
            self.set_error(e)
        except Exception as e:
            logger.error("provider_stream_error", provider=self._provider_name, error=str(e))
            self.set_error(
                ProviderError(f"{self._provider_name} stream error: {e}", self._provider_name, e)
            )
        finally:
            self._channel.close()
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    def __aiter__(self) -> ProviderStream:
        self._start()
        return self

    async def __anext__(self) -> StreamEvent:
        self._start()
        return await self._channel.receive()

    async def aclose(self) -> None:
        """Stop the producer and discard anything still buffered."""
        self._channel.abandon()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def collect(self, model: str = "") -> GenerateResponse:
        """Drain the stream into a whole response, raising its error if any."""
        response = GenerateResponse(model=model)
        text_parts: list[str] = []
        full_text: str | None = None
        usage = Usage()
        warnings: list[ProviderWarning] = []
        async for event in self:
            if isinstance(event, TextDeltaEvent):
                text_parts.append(event.delta)
            elif isinstance(event, TextCompleteEvent):
                full_text = event.full_text
            elif isinstance(event, ToolCallCompleteEvent):
                response.tool_calls.append(event.tool_call)
            elif isinstance(event, UsageEvent):
                usage = usage + event.usage
            elif isinstance(event, FinishReasonEvent):
                response.finish_reason = event.reason
            elif isinstance(event, StreamEndEvent):
                if not response.finish_reason:
                    response.finish_reason = event.finish_reason
            elif isinstance(event, StreamStartEvent) and event.model:
                response.model = event.model
            elif isinstance(event, WarningEvent):
                warnings.append(event.warning)
            elif isinstance(event, ProviderMetadataEvent):
                response.provider_metadata.update(event.metadata)
        if self._error is not None:
            raise self._error
        response.content = full_text if full_text is not None else "".join(text_parts)
        response.usage = usage
        response.warnings = warnings
        return response


class LanguageModel(ABC):
    """Abstract base class for LLM backends."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @property
    @abstractmethod
    def model(self) -> str:
        ...

    @property
    def id(self) -> str:
        return f"{self.provider_name}:{self.model}"

    @abstractmethod
    def capabilities(self) -> Capabilities:
        ...

    @abstractmethod
    async def stream(self, request: GenerateRequest) -> ProviderStream:
        """Start a streaming generation.

        Raises ``ProviderError`` when the request cannot be started at all;
        failures after that point are reported through ``ProviderStream.err()``.
        """
        ...

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        """Run a whole-response generation by draining ``stream``."""
        stream = await self.stream(request)
        return await stream.collect(model=self.model)

    async def close(self) -> None:
        """Release client resources."""


def usage_increment(cumulative: Usage, reported: Usage) -> Usage:
    """Part of a cumulative vendor snapshot not yet reported downstream."""
    return Usage(
        prompt_tokens=max(0, cumulative.prompt_tokens - reported.prompt_tokens),
        completion_tokens=max(0, cumulative.completion_tokens - reported.completion_tokens),
        total_tokens=max(0, cumulative.total_tokens - reported.total_tokens),
        reasoning_tokens=max(0, cumulative.reasoning_tokens - reported.reasoning_tokens),
        cached_input_tokens=max(0, cumulative.cached_input_tokens - reported.cached_input_tokens),
    )


def drop_unanswered_tool_calls(messages: list[Message]) -> list[Message]:
    """Copy of ``messages`` without tool calls that no tool result answers.

    A partially answered input request leaves calls open in the history, and
    the Anthropic, OpenAI and Gemini APIs require a result for every call in
    a request. An assistant message left with neither content nor calls is
    dropped.
    """
    answered = {tr.tool_call_id for msg in messages for tr in msg.tool_results}
    kept: list[Message] = []
    dropped = 0
    for msg in messages:
        if msg.tool_calls:
            calls = [tc for tc in msg.tool_calls if tc.id in answered]
            if len(calls) != len(msg.tool_calls):
                dropped += len(msg.tool_calls) - len(calls)
                if not calls and not msg.content:
                    continue
                msg = msg.model_copy(update={"tool_calls": calls})
        kept.append(msg)
    if dropped:
        logger.debug("unanswered_tool_calls_dropped", count=dropped)
    return kept
