"""Exception hierarchy for the agent engine."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for all agent engine errors."""


class ProviderNotSetError(AgentError):
    def __init__(self) -> None:
        super().__init__("model is required")


class ToolNotFoundError(AgentError):
    def __init__(self, tool_name: str):
        super().__init__(f"tool {tool_name} not found")
        self.tool_name = tool_name


class ToolArgumentsError(AgentError):
    def __init__(self, tool_name: str, tool_call_id: str, reason: str):
        super().__init__(
            f"failed to encode arguments for tool {tool_name} (call {tool_call_id}): {reason}"
        )
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id


class ToolExecutionError(AgentError):
    """Raised by tools for ordinary failures. Fed back to the model, never fatal."""


class ProviderError(AgentError):
    """Adapter-level failure: connection, HTTP status, or wire parse error."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        original_error: BaseException | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error


class StoreError(AgentError):
    def __init__(self, message: str, conversation_id: str | None = None):
        if conversation_id:
            message = f"{message}, conversation_id: {conversation_id}"
        super().__init__(message)
        self.conversation_id = conversation_id


class InvalidConversationError(StoreError):
    def __init__(self) -> None:
        super().__init__("conversation id is required")


class ChatCancelledError(AgentError):
    def __init__(self) -> None:
        super().__init__("chat cancelled")
