"""Human-in-the-loop input request tool.

Calling ``request_user_input`` pauses the conversation: the agent marks it
interrupted, publishes a ``UserInputRequestedEvent`` and stops. The caller
resumes with a ``ChatRequest`` whose ``tool_results`` answer the call id.
"""

from __future__ import annotations

from typing import Any

from agent_engine.ai.tools.base import HumanInputTool
from agent_engine.core.errors import ToolExecutionError
from agent_engine.core.events import UserInputRequestedEvent
from agent_engine.core.models import ToolCall

USER_INPUT_TOOL_NAME = "request_user_input"
INPUT_TYPES = ("text", "credential-choice")


class UserInputTool(HumanInputTool):
    @property
    def name(self) -> str:
        return USER_INPUT_TOOL_NAME

    @property
    def description(self) -> str:
        return (
            "Request input from the user during execution. Use this when you need the user "
            "to provide information, confirm an action, or make a choice. The conversation "
            "will pause until the user responds."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "The question or prompt to show the user",
                },
                "input_type": {
                    "type": "string",
                    "enum": list(INPUT_TYPES),
                    "description": "Type of input expected from user (default: text)",
                },
                "options": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Available options (required for choice type)",
                },
                "metadata": {
                    "type": "object",
                    "description": "Additional context or metadata for the request",
                },
            },
            "required": ["prompt"],
        }

    async def execute(self, args_json: str) -> str:
        raise ToolExecutionError(
            f"{USER_INPUT_TOOL_NAME} tool should not be executed directly; "
            "it pauses the conversation until the caller resumes with tool results"
        )

    async def send_input_event(self, tool_call: ToolCall) -> None:
        args = tool_call.arguments
        input_type = args.get("input_type") or "text"
        options = args.get("options") or []
        metadata = args.get("metadata") or {}
        await self.emit(
            UserInputRequestedEvent(
                tool_call_id=tool_call.id,
                prompt=str(args.get("prompt", "")),
                input_type=input_type if input_type in INPUT_TYPES else "text",
                options=[str(o) for o in options] if isinstance(options, list) else [],
                metadata=metadata if isinstance(metadata, dict) else {},
            )
        )
