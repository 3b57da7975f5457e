"""Conversation, message, usage, and plan data models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_engine.core.types import (
    ConversationStatus,
    PlanStatus,
    PlanStepStatus,
    Role,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Usage(BaseModel):
    """Token counters. Running totals are the pointwise sum of snapshots."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int = 0
    cached_input_tokens: int = 0

    def add(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
        )

    def __add__(self, other: Usage) -> Usage:
        return self.add(other)

    def is_zero(self) -> bool:
        return self == Usage()


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    tool_call_id: str
    content: str
    is_error: bool = False


class ProviderWarning(BaseModel):
    type: str
    message: str


class Message(BaseModel):
    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Conversation(BaseModel):
    id: str
    session_id: str = ""
    user_id: str | None = None
    messages: list[Message] = Field(default_factory=list)
    status: ConversationStatus = ConversationStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def new(cls, session_id: str = "", user_id: str | None = None) -> Conversation:
        return cls(id=str(uuid.uuid4()), session_id=session_id, user_id=user_id)

    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE

    def is_interrupted(self) -> bool:
        return self.status == ConversationStatus.INTERRUPTED

    def is_completed(self) -> bool:
        return self.status == ConversationStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status == ConversationStatus.FAILED

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = utcnow()

    def pending_tool_calls(self) -> list[ToolCall]:
        """Tool calls of the latest assistant turn that have no result yet."""
        answered: set[str] = set()
        for message in reversed(self.messages):
            if message.role == Role.TOOL:
                answered.update(r.tool_call_id for r in message.tool_results)
            elif message.role == Role.ASSISTANT and message.tool_calls:
                return [tc for tc in message.tool_calls if tc.id not in answered]
        return []


class PlanStep(BaseModel):
    id: str
    description: str
    status: PlanStepStatus = PlanStepStatus.PENDING
    result: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Plan(BaseModel):
    id: str
    goal: str
    steps: list[PlanStep] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.ACTIVE
    current_step: int = -1  # index into steps, -1 before the first start
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def current(self) -> PlanStep | None:
        if 0 <= self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None

    def next_pending_step(self) -> PlanStep | None:
        return next((s for s in self.steps if s.status == PlanStepStatus.PENDING), None)

    def in_progress_step(self) -> PlanStep | None:
        return next((s for s in self.steps if s.status == PlanStepStatus.IN_PROGRESS), None)

    def step_by_id(self, step_id: str) -> PlanStep | None:
        return next((s for s in self.steps if s.id == step_id), None)

    def is_complete(self) -> bool:
        return all(s.status == PlanStepStatus.COMPLETED for s in self.steps)

    def has_failed_steps(self) -> bool:
        return any(s.status == PlanStepStatus.FAILED for s in self.steps)


class ToolDeclaration(BaseModel):
    """Provider-facing tool shape: name, description, JSON schema."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class GenerateRequest(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    system: str = ""
    tools: list[ToolDeclaration] = Field(default_factory=list)
    max_tokens: int | None = None
    temperature: float | None = None


class GenerateResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = ""
    model: str = ""
    warnings: list[ProviderWarning] = Field(default_factory=list)
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
