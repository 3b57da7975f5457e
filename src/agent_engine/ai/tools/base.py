"""Abstract tool interface and optional tool capabilities."""

from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from agent_engine.core.events import StreamEvent
from agent_engine.core.models import ToolCall, ToolDeclaration

EventEmitter = Callable[[StreamEvent], Awaitable[None]]
ToolAdder = Callable[["Tool"], None]
ToolFunc = Callable[[dict[str, Any]], str | Awaitable[str]]


class Tool(ABC):
    """Base class for all model-callable tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name sent to the provider."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema dict describing accepted arguments."""
        ...

    @abstractmethod
    async def execute(self, args_json: str) -> str:
        """Run the tool with JSON-encoded arguments and return text for the model.

        Raising signals an ordinary tool failure; the orchestrator hands the
        message back to the model as an error result.
        """
        ...

    def to_declaration(self) -> ToolDeclaration:
        return ToolDeclaration(name=self.name, description=self.description, parameters=self.parameters)


class EventEmittingTool(Tool):
    """A tool that publishes its own events into the agent's stream."""

    _emitter: EventEmitter | None = None

    def set_event_emitter(self, emitter: EventEmitter) -> None:
        self._emitter = emitter

    def has_event_emitter(self) -> bool:
        return self._emitter is not None

    async def emit(self, event: StreamEvent) -> None:
        if self._emitter is not None:
            await self._emitter(event)


class ToolAdderTool(Tool):
    """A tool that can register further tools while the agent runs."""

    _tool_adder: ToolAdder | None = None

    def set_tool_adder(self, adder: ToolAdder) -> None:
        self._tool_adder = adder

    def add_tool(self, tool: Tool) -> None:
        if self._tool_adder is None:
            raise RuntimeError(f"tool {self.name} has no tool adder attached")
        self._tool_adder(tool)


class HumanInputTool(EventEmittingTool):
    """A tool whose calls pause the conversation until a human answers."""

    @abstractmethod
    async def send_input_event(self, tool_call: ToolCall) -> None:
        """Publish the input request for ``tool_call``."""
        ...


class FuncTool(Tool):
    """Tool backed by a plain function taking the decoded argument dict."""

    def __init__(self, name: str, description: str, parameters: dict[str, Any], fn: ToolFunc):
        self._name = name
        self._description = description
        self._parameters = parameters
        self._fn = fn

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(self, args_json: str) -> str:
        args = json.loads(args_json) if args_json else {}
        result = self._fn(args)
        if inspect.isawaitable(result):
            result = await result
        return result if isinstance(result, str) else json.dumps(result)


def define(name: str, description: str, parameters: dict[str, Any], fn: ToolFunc) -> FuncTool:
    return FuncTool(name, description, parameters, fn)
