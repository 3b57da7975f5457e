"""Structured plan tracking exposed to the model as four tools.

The ``PlanManager`` holds at most one active plan. The model drives it with
``create_plan``, ``start_next_step``, ``complete_current_step`` and
``update_plan``; every mutation is published as a Plan* event through the
same emitter the agent uses for its own events.
"""

from __future__ import annotations

import json
import re
import uuid
from typing import Any, Awaitable, Callable

from agent_engine.ai.tools.base import EventEmitter, EventEmittingTool, Tool
from agent_engine.core.errors import ToolExecutionError
from agent_engine.core.events import (
    PlanCompletedEvent,
    PlanCreatedEvent,
    PlanStepCompletedEvent,
    PlanStepFailedEvent,
    PlanStepStartedEvent,
    PlanUpdatedEvent,
    StreamEvent,
)
from agent_engine.core.models import Plan, PlanStep, utcnow
from agent_engine.core.types import PlanStatus, PlanStepStatus
from agent_engine.log import get_logger

logger = get_logger(__name__)

_STEP_ID_PATTERN = re.compile(r"^step_(\d+)$")

CREATE_PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "goal": {"type": "string", "description": "The overall goal of this plan"},
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "description": {
                        "type": "string",
                        "description": "Description of what this step should accomplish",
                    },
                },
                "required": ["description"],
            },
            "description": "List of steps to accomplish the goal",
        },
    },
    "required": ["goal", "steps"],
}

START_NEXT_STEP_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

COMPLETE_CURRENT_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "result": {"type": "string", "description": "Optional description of what was accomplished"},
    },
}

UPDATE_PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {
            "type": "string",
            "enum": ["add_step", "remove_step"],
            "description": "What to do: add_step or remove_step",
        },
        "step_description": {"type": "string", "description": "For add_step: description of the new step"},
        "step_id": {"type": "string", "description": "For remove_step: ID of step to remove"},
        "position": {
            "type": "string",
            "description": "For add_step: where to insert (end, or before:step_id)",
        },
    },
    "required": ["action"],
}


def _parse_args(args_json: str) -> dict[str, Any]:
    if not args_json:
        return {}
    try:
        args = json.loads(args_json)
    except json.JSONDecodeError as e:
        raise ToolExecutionError(f"invalid arguments: {e}") from e
    if not isinstance(args, dict):
        raise ToolExecutionError("invalid arguments: expected a JSON object")
    return args


class PlanManager:
    """Owns the active plan and enforces its step invariants."""

    def __init__(self) -> None:
        self._plan: Plan | None = None
        self._emitter: EventEmitter | None = None

    @property
    def active_plan(self) -> Plan | None:
        return self._plan

    def set_event_emitter(self, emitter: EventEmitter) -> None:
        self._emitter = emitter

    async def _emit(self, event: StreamEvent) -> None:
        if self._emitter is not None:
            await self._emitter(event)

    def _require_plan(self) -> Plan:
        if self._plan is None:
            raise ToolExecutionError("no active plan")
        return self._plan

    def _next_step_id(self, plan: Plan) -> str:
        numbers = [int(m.group(1)) for s in plan.steps if (m := _STEP_ID_PATTERN.match(s.id))]
        return f"step_{max(numbers, default=0) + 1}"

    def _sync_current_index(self, plan: Plan, current_id: str | None) -> None:
        if current_id is None:
            return
        for i, step in enumerate(plan.steps):
            if step.id == current_id:
                plan.current_step = i
                return
        plan.current_step = -1

    async def _complete_if_done(self, plan: Plan) -> bool:
        if plan.status == PlanStatus.ACTIVE and plan.steps and plan.is_complete():
            plan.status = PlanStatus.COMPLETED
            plan.updated_at = utcnow()
            logger.info("plan_completed", plan_id=plan.id, goal=plan.goal)
            await self._emit(PlanCompletedEvent(plan=plan.model_copy(deep=True)))
            return True
        return False

    async def create_plan(self, args_json: str) -> str:
        args = _parse_args(args_json)
        goal = args.get("goal") or ""
        raw_steps = args.get("steps") or []
        if not goal:
            raise ToolExecutionError("goal is required")
        if not raw_steps:
            raise ToolExecutionError("at least one step is required")

        steps = []
        for i, raw in enumerate(raw_steps, start=1):
            description = raw.get("description", "") if isinstance(raw, dict) else str(raw)
            steps.append(PlanStep(id=f"step_{i}", description=description))

        plan = Plan(id=str(uuid.uuid4()), goal=goal, steps=steps)
        if self._plan is not None and self._plan.status == PlanStatus.ACTIVE:
            logger.info("plan_replaced", old_plan_id=self._plan.id, plan_id=plan.id)
        self._plan = plan
        logger.info("plan_created", plan_id=plan.id, step_count=len(steps))
        await self._emit(PlanCreatedEvent(plan=plan.model_copy(deep=True)))
        return f"Plan created with {len(steps)} steps. Plan ID: {plan.id}"

    async def start_next_step(self, args_json: str = "") -> str:
        plan = self._require_plan()
        in_progress = plan.in_progress_step()
        if in_progress is not None:
            raise ToolExecutionError(
                f"step already in progress: {in_progress.description}. "
                "Complete it first before starting next step"
            )
        step = plan.next_pending_step()
        if step is None:
            raise ToolExecutionError("no pending steps remaining")

        step.status = PlanStepStatus.IN_PROGRESS
        step.started_at = utcnow()
        plan.updated_at = utcnow()
        self._sync_current_index(plan, step.id)

        logger.info("plan_step_started", plan_id=plan.id, step_id=step.id)
        await self._emit(PlanStepStartedEvent(plan_id=plan.id, step=step.model_copy()))
        return f"Started step {plan.current_step + 1}/{len(plan.steps)}: {step.description}"

    async def complete_current_step(self, args_json: str = "") -> str:
        args = _parse_args(args_json)
        plan = self._require_plan()
        step = plan.in_progress_step()
        if step is None:
            raise ToolExecutionError("no step is currently in progress")

        step.status = PlanStepStatus.COMPLETED
        step.completed_at = utcnow()
        step.result = args.get("result") or None
        plan.updated_at = utcnow()

        logger.info("plan_step_completed", plan_id=plan.id, step_id=step.id)
        await self._emit(PlanStepCompletedEvent(plan_id=plan.id, step=step.model_copy()))

        if await self._complete_if_done(plan):
            return f"Step completed: {step.description}\nAll plan steps completed! Goal achieved: {plan.goal}"

        next_step = plan.next_pending_step()
        if next_step is not None:
            return f"Step completed: {step.description}\nNext step: {next_step.description}"
        return f"Step completed: {step.description}"

    async def fail_current_step(self, error: str) -> PlanStep:
        """Mark the in-progress step failed. Used by callers supervising a plan."""
        plan = self._require_plan()
        step = plan.in_progress_step()
        if step is None:
            raise ToolExecutionError("no step is currently in progress")

        step.status = PlanStepStatus.FAILED
        step.error = error
        step.completed_at = utcnow()
        plan.status = PlanStatus.FAILED
        plan.updated_at = utcnow()

        logger.warning("plan_step_failed", plan_id=plan.id, step_id=step.id, error=error)
        await self._emit(PlanStepFailedEvent(plan_id=plan.id, step=step.model_copy(), error=error))
        return step

    async def update_plan(self, args_json: str) -> str:
        args = _parse_args(args_json)
        plan = self._require_plan()
        action = args.get("action") or ""
        current = plan.current()
        current_id = current.id if current is not None else None

        if action == "add_step":
            description = args.get("step_description") or ""
            if not description:
                raise ToolExecutionError("step_description is required for add_step")
            new_step = PlanStep(id=self._next_step_id(plan), description=description)

            position = (args.get("position") or "end").strip()
            if position == "end":
                plan.steps.append(new_step)
            elif position.startswith("before:"):
                target_id = position[len("before:"):]
                index = next((i for i, s in enumerate(plan.steps) if s.id == target_id), None)
                if index is None:
                    raise ToolExecutionError(f"step not found: {target_id}")
                plan.steps.insert(index, new_step)
            else:
                raise ToolExecutionError(f"invalid position: {position}")

            if plan.status == PlanStatus.COMPLETED:
                plan.status = PlanStatus.ACTIVE
            change = f"Added step: {description}"

        elif action == "remove_step":
            step_id = args.get("step_id") or ""
            if not step_id:
                raise ToolExecutionError("step_id is required for remove_step")
            step = plan.step_by_id(step_id)
            if step is None:
                raise ToolExecutionError(f"step not found: {step_id}")
            if step.status == PlanStepStatus.IN_PROGRESS:
                raise ToolExecutionError(f"cannot remove step in progress: {step_id}")
            if len(plan.steps) == 1:
                raise ToolExecutionError("cannot remove the only step of a plan")
            plan.steps.remove(step)
            change = f"Removed step: {step.description}"

        else:
            raise ToolExecutionError(f"invalid action: {action}")

        self._sync_current_index(plan, current_id)
        plan.updated_at = utcnow()
        logger.info("plan_updated", plan_id=plan.id, change=change)
        await self._emit(PlanUpdatedEvent(plan=plan.model_copy(deep=True), change=change))
        await self._complete_if_done(plan)
        return change

    def tools(self) -> list[Tool]:
        return [
            PlanningTool(
                self,
                "create_plan",
                "Create a structured plan with multiple steps to accomplish a goal. "
                "Use this when you need to break down a complex task into manageable steps.",
                CREATE_PLAN_SCHEMA,
                self.create_plan,
            ),
            PlanningTool(
                self,
                "start_next_step",
                "Start the next pending step in the plan. Use this before you begin working "
                "on the next task. Only one step can be in progress at a time.",
                START_NEXT_STEP_SCHEMA,
                self.start_next_step,
            ),
            PlanningTool(
                self,
                "complete_current_step",
                "Mark the current in-progress step as completed. Use this after you have "
                "finished working on the current task.",
                COMPLETE_CURRENT_STEP_SCHEMA,
                self.complete_current_step,
            ),
            PlanningTool(
                self,
                "update_plan",
                "Modify the current plan by adding or removing steps. Use this when you "
                "realize the plan needs adjustment.",
                UPDATE_PLAN_SCHEMA,
                self.update_plan,
            ),
        ]


class PlanningTool(EventEmittingTool):
    """One plan operation; the emitter attaches to the shared manager."""

    def __init__(
        self,
        manager: PlanManager,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: Callable[[str], Awaitable[str]],
    ):
        self._manager = manager
        self._name = name
        self._description = description
        self._parameters = parameters
        self._handler = handler

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    def set_event_emitter(self, emitter: EventEmitter) -> None:
        super().set_event_emitter(emitter)
        self._manager.set_event_emitter(emitter)

    async def execute(self, args_json: str) -> str:
        return await self._handler(args_json)
