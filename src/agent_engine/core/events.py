"""Canonical streaming events.

Every observable thing that happens while an agent generates text or runs
tools is one of the immutable event classes below. Each event carries a
kebab-case ``type`` tag and a UTC ``timestamp``; ``to_dict()`` yields the
JSON-compatible wire form callers receive regardless of which provider
produced the underlying stream.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from agent_engine.core.models import (
    Plan,
    PlanStep,
    ProviderWarning,
    ToolCall,
    ToolResult,
    Usage,
    utcnow,
)


class BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# Lifecycle


class StreamStartEvent(BaseEvent):
    type: Literal["stream-start"] = "stream-start"
    model: str = ""
    request_id: str = ""
    system_fingerprint: str = ""


class StreamEndEvent(BaseEvent):
    type: Literal["stream-end"] = "stream-end"
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


class StreamErrorEvent(BaseEvent):
    type: Literal["stream-error"] = "stream-error"
    message: str
    code: str = ""
    recoverable: bool = False


# Content


class TextDeltaEvent(BaseEvent):
    type: Literal["text-delta"] = "text-delta"
    delta: str
    index: int = 0


class TextCompleteEvent(BaseEvent):
    type: Literal["text-complete"] = "text-complete"
    full_text: str


class ReasoningDeltaEvent(BaseEvent):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    delta: str


class ReasoningCompleteEvent(BaseEvent):
    type: Literal["reasoning-complete"] = "reasoning-complete"
    full_reasoning: str
    summary: str = ""


# Tool calls as streamed by the model


class ToolCallStartEvent(BaseEvent):
    type: Literal["tool-call-start"] = "tool-call-start"
    id: str
    name: str
    index: int = 0


class ToolCallDeltaEvent(BaseEvent):
    type: Literal["tool-call-delta"] = "tool-call-delta"
    id: str
    argument_delta: str
    index: int = 0


class ToolCallCompleteEvent(BaseEvent):
    type: Literal["tool-call-complete"] = "tool-call-complete"
    tool_call: ToolCall
    index: int = 0


# Metadata


class UsageEvent(BaseEvent):
    type: Literal["usage"] = "usage"
    usage: Usage


class FinishReasonEvent(BaseEvent):
    type: Literal["finish-reason"] = "finish-reason"
    reason: str


class WarningEvent(BaseEvent):
    type: Literal["warning"] = "warning"
    warning: ProviderWarning


class ProviderMetadataEvent(BaseEvent):
    type: Literal["provider-metadata"] = "provider-metadata"
    metadata: dict[str, Any] = Field(default_factory=dict)


# Agent


class AgentStartedEvent(BaseEvent):
    type: Literal["agent-started"] = "agent-started"
    session_id: str = ""


class AgentEndedEvent(BaseEvent):
    type: Literal["agent-ended"] = "agent-ended"
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = "stop"


class AgentStepStartEvent(BaseEvent):
    type: Literal["agent-step-start"] = "agent-step-start"
    step_number: int
    message: str = ""


class AgentStepCompleteEvent(BaseEvent):
    type: Literal["agent-step-complete"] = "agent-step-complete"
    step_number: int
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = ""


class ToolExecutionStartEvent(BaseEvent):
    type: Literal["tool-execution-start"] = "tool-execution-start"
    tool_call: ToolCall


class ToolExecutionCompleteEvent(BaseEvent):
    type: Literal["tool-execution-complete"] = "tool-execution-complete"
    tool_call: ToolCall
    tool_result: ToolResult


# Plans


class PlanCreatedEvent(BaseEvent):
    type: Literal["plan-created"] = "plan-created"
    plan: Plan


class PlanStepStartedEvent(BaseEvent):
    type: Literal["plan-step-started"] = "plan-step-started"
    plan_id: str
    step: PlanStep


class PlanStepCompletedEvent(BaseEvent):
    type: Literal["plan-step-completed"] = "plan-step-completed"
    plan_id: str
    step: PlanStep


class PlanStepFailedEvent(BaseEvent):
    type: Literal["plan-step-failed"] = "plan-step-failed"
    plan_id: str
    step: PlanStep
    error: str


class PlanUpdatedEvent(BaseEvent):
    type: Literal["plan-updated"] = "plan-updated"
    plan: Plan
    change: str


class PlanCompletedEvent(BaseEvent):
    type: Literal["plan-completed"] = "plan-completed"
    plan: Plan


# Human in the loop


class UserInputRequestedEvent(BaseEvent):
    type: Literal["user-input-requested"] = "user-input-requested"
    tool_call_id: str
    prompt: str
    input_type: str = "text"
    options: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


StreamEvent = Union[
    StreamStartEvent,
    StreamEndEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    TextCompleteEvent,
    ReasoningDeltaEvent,
    ReasoningCompleteEvent,
    ToolCallStartEvent,
    ToolCallDeltaEvent,
    ToolCallCompleteEvent,
    UsageEvent,
    FinishReasonEvent,
    WarningEvent,
    ProviderMetadataEvent,
    AgentStartedEvent,
    AgentEndedEvent,
    AgentStepStartEvent,
    AgentStepCompleteEvent,
    ToolExecutionStartEvent,
    ToolExecutionCompleteEvent,
    PlanCreatedEvent,
    PlanStepStartedEvent,
    PlanStepCompletedEvent,
    PlanStepFailedEvent,
    PlanUpdatedEvent,
    PlanCompletedEvent,
    UserInputRequestedEvent,
]


def stream_error(err: BaseException, code: str = "", recoverable: bool = False) -> StreamErrorEvent:
    return StreamErrorEvent(message=str(err), code=code, recoverable=recoverable)


def is_terminal(event: BaseEvent | None) -> bool:
    return isinstance(event, AgentEndedEvent)
