"""Shared fixtures: a scripted language model and small tools."""

from __future__ import annotations

from typing import Any, AsyncIterator, Iterable

import pytest

from agent_engine.ai.providers.base import Capabilities, LanguageModel, ProviderStream
from agent_engine.ai.tools.base import define
from agent_engine.core.errors import ProviderError
from agent_engine.core.events import (
    FinishReasonEvent,
    StreamEvent,
    StreamStartEvent,
    TextDeltaEvent,
    ToolCallCompleteEvent,
    UsageEvent,
)
from agent_engine.core.models import GenerateRequest, ToolCall, Usage
from agent_engine.storage.memory import InMemoryStore

ScriptItem = StreamEvent | BaseException
Script = list[ScriptItem] | BaseException


class ScriptedModel(LanguageModel):
    """Language model that replays one scripted event list per ``stream`` call.

    A script that is an exception is raised from ``stream`` itself; an
    exception inside a script is raised mid-stream.
    """

    def __init__(self, scripts: Iterable[Script] = (), supports_tools: bool = True):
        self._scripts = list(scripts)
        self._supports_tools = supports_tools
        self.requests: list[GenerateRequest] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    @property
    def model(self) -> str:
        return "scripted-1"

    def capabilities(self) -> Capabilities:
        return Capabilities(supports_tools=self._supports_tools)

    async def stream(self, request: GenerateRequest) -> ProviderStream:
        self.requests.append(request.model_copy(deep=True))
        if not self._scripts:
            raise ProviderError("no scripted response left", self.provider_name)
        script = self._scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        return ProviderStream(_replay(script), self.provider_name)


async def _replay(script: list[ScriptItem]) -> AsyncIterator[StreamEvent]:
    for item in script:
        if isinstance(item, BaseException):
            raise item
        yield item


def text_turn(text: str, reason: str = "stop", usage: Usage | None = None) -> list[ScriptItem]:
    usage = usage or Usage(prompt_tokens=10, completion_tokens=2, total_tokens=12)
    return [
        StreamStartEvent(model="scripted-1"),
        TextDeltaEvent(delta=text),
        UsageEvent(usage=usage),
        FinishReasonEvent(reason=reason),
    ]


def tool_turn(*calls: ToolCall, text: str = "", usage: Usage | None = None) -> list[ScriptItem]:
    usage = usage or Usage(prompt_tokens=20, completion_tokens=5, total_tokens=25)
    events: list[ScriptItem] = [StreamStartEvent(model="scripted-1")]
    if text:
        events.append(TextDeltaEvent(delta=text))
    events.extend(ToolCallCompleteEvent(tool_call=call, index=i) for i, call in enumerate(calls))
    events.append(UsageEvent(usage=usage))
    events.append(FinishReasonEvent(reason="tool_calls"))
    return events


def call(call_id: str, name: str, **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


async def collect(stream) -> list[StreamEvent]:
    return [event async for event in stream]


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def echo_tool():
    return define(
        "echo",
        "Echo the given text back",
        {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        lambda args: f"echo: {args.get('text', '')}",
    )


@pytest.fixture
def failing_tool():
    def _fail(args: dict[str, Any]) -> str:
        raise ValueError("boom")

    return define("flaky", "Always fails", {"type": "object", "properties": {}}, _fail)
