"""Agent orchestrator: one step loop per chat call.

``Agent.chat`` sets up the conversation, then runs the loop on its own task:
each step asks the model for a response, folds the streamed events into a
``Step``, pauses on human-input tool calls, runs the remaining tool calls and
persists the conversation. Every run ends with exactly one
``AgentEndedEvent`` followed by the close of the event stream.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable, Iterable

from agent_engine.ai.providers.base import LanguageModel, ProviderStream
from agent_engine.ai.tools.base import EventEmittingTool, HumanInputTool, Tool, ToolAdderTool
from agent_engine.ai.tools.registry import ToolRegistry
from agent_engine.core.channel import EventChannel
from agent_engine.core.errors import (
    ChatCancelledError,
    ProviderNotSetError,
    StoreError,
    ToolArgumentsError,
    ToolNotFoundError,
)
from agent_engine.core.events import (
    AgentEndedEvent,
    AgentStartedEvent,
    AgentStepCompleteEvent,
    AgentStepStartEvent,
    FinishReasonEvent,
    StreamEndEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolCallCompleteEvent,
    ToolExecutionCompleteEvent,
    ToolExecutionStartEvent,
    UsageEvent,
    WarningEvent,
    stream_error,
)
from agent_engine.core.models import (
    Conversation,
    GenerateRequest,
    Message,
    ProviderWarning,
    ToolCall,
    ToolResult,
    Usage,
)
from agent_engine.core.types import (
    TERMINAL_FINISH_REASONS,
    ConversationStatus,
    FinishReason,
    Role,
)
from agent_engine.log import bind_context, clear_context, get_logger
from agent_engine.storage.base import ConversationStore, Filter, NoOpStore

logger = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10

SKIPPED_INPUT_RESULT = json.dumps(
    {
        "skipped": True,
        "reason": "User sent a new message instead of responding to the input request",
    }
)

Hook = Callable[..., Awaitable[None] | None]


@dataclass
class Hooks:
    """Optional lifecycle callbacks. Each may be a plain function or a coroutine function."""

    on_before_generate: Hook | None = None  # (request, step)
    on_generation_failed: Hook | None = None  # (request, step, error)
    on_step_start: Hook | None = None  # (step)
    on_step_complete: Hook | None = None  # (step)
    on_before_memory_retrieve: Hook | None = None  # (filter)
    on_memory_retrieved: Hook | None = None  # (filter, conversation)
    on_memory_retrieval_failed: Hook | None = None  # (filter, error)
    on_before_memory_save: Hook | None = None  # (conversation)
    on_memory_saved: Hook | None = None  # (conversation)
    on_memory_save_failed: Hook | None = None  # (conversation, error)


async def _call_hook(hook: Hook | None, *args: Any) -> None:
    if hook is None:
        return
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class ChatRequest:
    prompt: str = ""
    session_id: str = ""
    user_id: str | None = None
    # Only set when answering a conversation paused for human input.
    tool_results: list[ToolResult] = field(default_factory=list)


@dataclass
class Step:
    """One generation call plus the tool executions it triggered."""

    step_number: int
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = ""
    warnings: list[ProviderWarning] = field(default_factory=list)
    request: GenerateRequest | None = None


@dataclass
class ChatResult:
    steps: list[Step]
    total_usage: Usage
    finish_reason: str

    @property
    def content(self) -> str:
        return self.steps[-1].content if self.steps else ""


class FinishCheck(StrEnum):
    """Why the loop stopped (or ``continue`` while it keeps going)."""

    CONTINUE = "continue"
    NO_TOOL_CALLS = "no_tool_calls"
    AWAITING_INPUT = "awaiting_input"
    TERMINAL_REASON = "terminal_reason"
    MAX_ITERATIONS = "max_iterations"


class ChatStream:
    """Events of one chat run, ending after ``AgentEndedEvent``.

    ``err()`` is meaningful once iteration has finished.
    """

    def __init__(self, agent: Agent, channel: EventChannel[StreamEvent], task: asyncio.Task):
        self._agent = agent
        self._channel = channel
        self._task = task

    def __aiter__(self) -> ChatStream:
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._channel.receive()

    def err(self) -> BaseException | None:
        return self._agent.error

    async def wait(self) -> BaseException | None:
        """Discard the remaining events, wait for the run to end and return its error."""
        async for _ in self:
            pass
        if not self._task.done():
            await asyncio.wait({self._task})
        return self.err()

    async def aclose(self) -> None:
        """Stop listening. The run is cancelled and nothing more is delivered."""
        self._channel.abandon()
        if not self._task.done():
            self._task.cancel()
            await asyncio.wait({self._task})


class Agent:
    """Multi-step, tool-calling agent over one language model."""

    def __init__(
        self,
        model: LanguageModel | None,
        tools: Iterable[Tool] = (),
        *,
        store: ConversationStore | None = None,
        system_prompt: str = "",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        conversation_history: int = 0,
        max_tokens: int | None = None,
        temperature: float | None = None,
        hooks: Hooks | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        if model is None:
            raise ProviderNotSetError()
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self._model = model
        self._store = store or NoOpStore()
        self._system_prompt = system_prompt
        self._max_iterations = max_iterations
        self._conversation_history = conversation_history
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._hooks = hooks or Hooks()
        self._cancel_event = cancel_event
        self._registry = ToolRegistry()
        self._channel: EventChannel[StreamEvent] | None = None
        self._task: asyncio.Task | None = None
        self._starting = False

        self._session_id = ""
        self._conversation: Conversation | None = None
        self._steps: list[Step] = []
        self._total_usage = Usage()
        self._finish_reason = ""
        self._finish_check = FinishCheck.CONTINUE
        self._error: BaseException | None = None

        for tool in tools:
            self.add_tool(tool)

    # Accessors

    @property
    def model(self) -> LanguageModel:
        return self._model

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def steps(self) -> list[Step]:
        return list(self._steps)

    @property
    def total_usage(self) -> Usage:
        return self._total_usage

    @property
    def finish_reason(self) -> str:
        return self._finish_reason

    @property
    def finish_check(self) -> FinishCheck:
        return self._finish_check

    @property
    def conversation(self) -> Conversation | None:
        return self._conversation

    @property
    def error(self) -> BaseException | None:
        return self._error

    def add_tool(self, tool: Tool) -> None:
        """Register a tool, wiring its optional capabilities. Safe while a run is in flight."""
        if isinstance(tool, EventEmittingTool):
            tool.set_event_emitter(self._emit)
        if isinstance(tool, ToolAdderTool):
            tool.set_tool_adder(self.add_tool)
        self._registry.register(tool)

    def _working_conversation(self) -> Conversation:
        if self._conversation is None:
            raise RuntimeError("conversation not set up")
        return self._conversation

    async def _emit(self, event: StreamEvent) -> None:
        if self._channel is not None:
            await self._channel.send(event)

    # Entry points

    async def chat(self, request: ChatRequest) -> ChatStream:
        """Set up the conversation and start the step loop on its own task.

        Setup failures (store load or save) raise here, before any event.
        """
        if self._starting or (self._task is not None and not self._task.done()):
            raise RuntimeError("agent is already running a chat")

        # Held through setup; nothing awaits between its release and task creation.
        self._starting = True
        try:
            self._reset(request.session_id)
            await self._setup_conversation(request)
            self._validate_capabilities()
        finally:
            self._starting = False

        channel: EventChannel[StreamEvent] = EventChannel(maxsize=1)
        self._channel = channel
        self._task = asyncio.create_task(self._run(channel))
        return ChatStream(self, channel, self._task)

    async def chat_sync(self, request: ChatRequest) -> ChatResult:
        """Run a chat to completion, discarding events. Raises the run's error."""
        stream = await self.chat(request)
        error = await stream.wait()
        if error is not None:
            raise error
        return ChatResult(
            steps=self.steps,
            total_usage=self._total_usage,
            finish_reason=self._finish_reason,
        )

    def _reset(self, session_id: str) -> None:
        self._session_id = session_id
        self._conversation = None
        self._steps = []
        self._total_usage = Usage()
        self._finish_reason = ""
        self._finish_check = FinishCheck.CONTINUE
        self._error = None

    def _validate_capabilities(self) -> None:
        capabilities = self._model.capabilities()
        if len(self._registry) and not capabilities.supports_tools:
            logger.warning(
                "model_lacks_tool_support",
                model=self._model.id,
                tools=len(self._registry),
            )

    # Session setup

    async def _setup_conversation(self, request: ChatRequest) -> None:
        conversation = await self._load_conversation(request)
        self._conversation = conversation

        if conversation.is_interrupted() and request.tool_results:
            conversation.add_message(Message(role=Role.TOOL, tool_results=list(request.tool_results)))
            conversation.status = ConversationStatus.ACTIVE
            await self._save()
            logger.info(
                "conversation_resumed",
                conversation_id=conversation.id,
                results=len(request.tool_results),
            )
            return

        if conversation.is_interrupted() and request.prompt:
            pending = conversation.pending_tool_calls()
            if pending:
                conversation.add_message(
                    Message(
                        role=Role.TOOL,
                        tool_results=[
                            ToolResult(tool_call_id=tc.id, content=SKIPPED_INPUT_RESULT) for tc in pending
                        ],
                    )
                )
            conversation.status = ConversationStatus.ACTIVE
            logger.info("pending_input_skipped", conversation_id=conversation.id, skipped=len(pending))
        elif request.tool_results:
            logger.warning(
                "tool_results_ignored",
                conversation_id=conversation.id,
                status=str(conversation.status),
            )

        if request.prompt:
            conversation.add_message(Message(role=Role.USER, content=request.prompt))

    async def _load_conversation(self, request: ChatRequest) -> Conversation:
        if not request.session_id:
            return Conversation.new(user_id=request.user_id)

        filter = Filter(session_id=request.session_id, user_id=request.user_id)
        await _call_hook(self._hooks.on_before_memory_retrieve, filter)
        try:
            conversation = await self._store.get_conversation(filter)
        except Exception as e:
            await _call_hook(self._hooks.on_memory_retrieval_failed, filter, e)
            logger.error("conversation_load_failed", session_id=request.session_id, error=str(e))
            if isinstance(e, StoreError):
                raise
            raise StoreError(f"failed to load conversation: {e}") from e
        await _call_hook(self._hooks.on_memory_retrieved, filter, conversation)
        return conversation

    async def _save(self) -> None:
        conversation = self._conversation
        if conversation is None or not self._session_id:
            return

        await _call_hook(self._hooks.on_before_memory_save, conversation)
        try:
            await self._store.save_conversation(conversation)
        except Exception as e:
            await _call_hook(self._hooks.on_memory_save_failed, conversation, e)
            logger.error("conversation_save_failed", conversation_id=conversation.id, error=str(e))
            if isinstance(e, StoreError):
                raise
            raise StoreError(f"failed to save conversation: {e}", conversation.id) from e
        await _call_hook(self._hooks.on_memory_saved, conversation)

    # Loop

    async def _run(self, channel: EventChannel[StreamEvent]) -> None:
        bind_context(session_id=self._session_id, conversation_id=self._working_conversation().id)
        logger.info("agent_started", model=self._model.id, max_iterations=self._max_iterations)
        try:
            await channel.send(AgentStartedEvent(session_id=self._session_id))
            await self._run_until_cancelled()
        except asyncio.CancelledError:
            self._error = ChatCancelledError()
            self._finish_reason = FinishReason.ERROR
            logger.info("agent_cancelled", steps=len(self._steps))
            raise
        except Exception as e:
            await self._fail(e)
        finally:
            if not self._finish_reason:
                self._finish_reason = self._default_finish_reason()
            await channel.send(
                AgentEndedEvent(usage=self._total_usage, finish_reason=self._finish_reason)
            )
            channel.close()
            logger.info(
                "agent_finished",
                steps=len(self._steps),
                finish_reason=self._finish_reason,
                finish_check=str(self._finish_check),
                total_tokens=self._total_usage.total_tokens,
            )
            clear_context("session_id", "conversation_id")

    async def _run_until_cancelled(self) -> None:
        """Run the loop, aborting it when the cancel event fires."""
        if self._cancel_event is None:
            await self._loop()
            return

        loop_task = asyncio.create_task(self._loop())
        waiter = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({loop_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not loop_task.done():
                loop_task.cancel()
                await asyncio.wait({loop_task})
        if loop_task in done:
            loop_task.result()
            return
        raise ChatCancelledError()

    async def _loop(self) -> None:
        while True:
            if self._cancel_event is not None and self._cancel_event.is_set():
                raise ChatCancelledError()
            self._finish_check = self._check_finish()
            if self._finish_check is not FinishCheck.CONTINUE:
                logger.debug("agent_loop_done", reason=str(self._finish_check))
                return
            await self._run_step()

    def _check_finish(self) -> FinishCheck:
        if len(self._steps) >= self._max_iterations:
            return FinishCheck.MAX_ITERATIONS
        if not self._steps:
            return FinishCheck.CONTINUE

        previous = self._steps[-1]
        if not previous.tool_calls:
            return FinishCheck.NO_TOOL_CALLS
        if not previous.tool_results:
            return FinishCheck.AWAITING_INPUT
        if previous.finish_reason in TERMINAL_FINISH_REASONS:
            return FinishCheck.TERMINAL_REASON
        return FinishCheck.CONTINUE

    def _default_finish_reason(self) -> str:
        if self._steps and self._steps[-1].finish_reason in (
            FinishReason.LENGTH,
            FinishReason.CONTENT_FILTER,
        ):
            return self._steps[-1].finish_reason
        return FinishReason.STOP

    async def _run_step(self) -> None:
        step = Step(step_number=len(self._steps) + 1)
        self._steps.append(step)
        await _call_hook(self._hooks.on_step_start, step)
        await self._emit(AgentStepStartEvent(step_number=step.step_number))
        logger.debug("agent_step_started", step=step.step_number)

        request = self._build_request()
        step.request = request
        await _call_hook(self._hooks.on_before_generate, request, step)

        try:
            stream = await self._model.stream(request)
        except Exception as e:
            await self._generation_failed(request, step, e)
            raise
        error = await self._consume(stream, step)
        if error is not None:
            await self._generation_failed(request, step, error)
            raise error

        human_calls, regular_calls = self._split_calls(step.tool_calls)
        if human_calls:
            await self._intervene(step, human_calls)

        self._working_conversation().add_message(
            Message(role=Role.ASSISTANT, content=step.content, tool_calls=list(step.tool_calls))
        )
        await self._save()

        await self._execute_tool_calls(step, regular_calls)

        await self._emit(
            AgentStepCompleteEvent(
                step_number=step.step_number,
                content=step.content,
                tool_calls=step.tool_calls,
                tool_results=step.tool_results,
                usage=step.usage,
                finish_reason=step.finish_reason,
            )
        )
        await _call_hook(self._hooks.on_step_complete, step)
        logger.info(
            "agent_step_completed",
            step=step.step_number,
            tool_calls=len(step.tool_calls),
            finish_reason=step.finish_reason,
        )

    def _build_request(self) -> GenerateRequest:
        return GenerateRequest(
            messages=history_window(self._working_conversation().messages, self._conversation_history),
            system=self._system_prompt,
            tools=[tool.to_declaration() for tool in self._registry.snapshot()],
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )

    async def _consume(self, stream: ProviderStream, step: Step) -> BaseException | None:
        """Forward every provider event and fold it into ``step``."""
        try:
            async for event in stream:
                await self._emit(event)
                if isinstance(event, TextDeltaEvent):
                    step.content += event.delta
                elif isinstance(event, ToolCallCompleteEvent):
                    step.tool_calls.append(event.tool_call)
                elif isinstance(event, UsageEvent):
                    step.usage = step.usage + event.usage
                    self._total_usage = self._total_usage + event.usage
                elif isinstance(event, FinishReasonEvent):
                    step.finish_reason = event.reason
                elif isinstance(event, WarningEvent):
                    step.warnings.append(event.warning)
                elif isinstance(event, StreamEndEvent) and not step.finish_reason:
                    step.finish_reason = event.finish_reason
        finally:
            await stream.aclose()
        return stream.err()

    def _split_calls(self, tool_calls: list[ToolCall]) -> tuple[list[ToolCall], list[ToolCall]]:
        human = self._registry.human_input_names()
        return (
            [tc for tc in tool_calls if tc.name in human],
            [tc for tc in tool_calls if tc.name not in human],
        )

    async def _intervene(self, step: Step, tool_calls: list[ToolCall]) -> None:
        self._working_conversation().status = ConversationStatus.INTERRUPTED
        for tool_call in tool_calls:
            tool = self._registry.get(tool_call.name)
            if isinstance(tool, HumanInputTool):
                await tool.send_input_event(tool_call)
        step.finish_reason = FinishReason.HUMAN_INTERVENTION
        self._finish_reason = FinishReason.HUMAN_INTERVENTION
        logger.info(
            "human_intervention_requested",
            step=step.step_number,
            tool_call_ids=[tc.id for tc in tool_calls],
        )

    async def _execute_tool_calls(self, step: Step, tool_calls: list[ToolCall]) -> None:
        for tool_call in tool_calls:
            step.tool_results.append(await self._execute_tool(tool_call))

        if step.tool_results:
            self._working_conversation().add_message(Message(role=Role.TOOL, tool_results=list(step.tool_results)))
            await self._save()

    async def _execute_tool(self, tool_call: ToolCall) -> ToolResult:
        tool = self._registry.get(tool_call.name)
        if tool is None:
            raise ToolNotFoundError(tool_call.name)
        try:
            args_json = json.dumps(tool_call.arguments)
        except (TypeError, ValueError) as e:
            raise ToolArgumentsError(tool_call.name, tool_call.id, str(e)) from e

        await self._emit(ToolExecutionStartEvent(tool_call=tool_call))
        try:
            content = await tool.execute(args_json)
            result = ToolResult(tool_call_id=tool_call.id, content=content)
        except Exception as e:
            logger.warning("tool_execution_error", tool_name=tool_call.name, error=str(e))
            result = ToolResult(tool_call_id=tool_call.id, content=f"Error: {e}", is_error=True)
        await self._emit(ToolExecutionCompleteEvent(tool_call=tool_call, tool_result=result))
        return result

    # Errors

    async def _generation_failed(self, request: GenerateRequest, step: Step, error: BaseException) -> None:
        step.finish_reason = FinishReason.ERROR
        await _call_hook(self._hooks.on_generation_failed, request, step, error)

    async def _fail(self, error: BaseException) -> None:
        self._error = error
        self._finish_reason = FinishReason.ERROR
        if self._steps:
            self._steps[-1].finish_reason = FinishReason.ERROR
        logger.error("agent_error", error=str(error), error_type=type(error).__name__)
        if self._channel is not None:
            await self._channel.offer(stream_error(error, code=type(error).__name__))


def history_window(messages: list[Message], limit: int) -> list[Message]:
    """Last ``limit`` messages, advanced so the window starts on a user turn.

    Without a user turn in range, leading tool messages are dropped instead.
    ``limit <= 0`` keeps the whole history.
    """
    if limit <= 0 or len(messages) <= limit:
        return list(messages)
    start = len(messages) - limit
    while start < len(messages) and messages[start].role != Role.USER:
        start += 1
    if start == len(messages):
        start = len(messages) - limit
        while start < len(messages) and messages[start].role == Role.TOOL:
            start += 1
    return list(messages[start:])
