"""Tool registry shared between the agent loop and tools that add tools."""

from __future__ import annotations

import threading
from typing import Iterable

from agent_engine.ai.tools.base import HumanInputTool, Tool
from agent_engine.core.models import ToolDeclaration
from agent_engine.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Ordered registry of tools, safe for registration during a run.

    The agent reads it through ``snapshot()`` once per turn.
    """

    def __init__(self, tools: Iterable[Tool] = ()):
        self._lock = threading.Lock()
        self._tools: dict[str, Tool] = {}
        self.register_many(tools)

    def register(self, tool: Tool) -> None:
        with self._lock:
            replaced = tool.name in self._tools
            self._tools[tool.name] = tool
        logger.info("tool_registered", tool_name=tool.name, replaced=replaced)

    def register_many(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        with self._lock:
            return self._tools.get(name)

    def snapshot(self) -> list[Tool]:
        with self._lock:
            return list(self._tools.values())

    def declarations(self) -> list[ToolDeclaration]:
        return [tool.to_declaration() for tool in self.snapshot()]

    def human_input_names(self) -> set[str]:
        return {tool.name for tool in self.snapshot() if isinstance(tool, HumanInputTool)}

    def is_human_input(self, name: str) -> bool:
        return isinstance(self.get(name), HumanInputTool)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools
