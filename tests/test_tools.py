"""Tests for the tool registry, function tools, user input and the plan manager."""

import json
import threading

import pytest

from agent_engine.ai.tools.base import ToolAdderTool, define
from agent_engine.ai.tools.planning import PlanManager
from agent_engine.ai.tools.registry import ToolRegistry
from agent_engine.ai.tools.user_input import USER_INPUT_TOOL_NAME, UserInputTool
from agent_engine.core.errors import ToolExecutionError
from agent_engine.core.events import (
    PlanCompletedEvent,
    PlanCreatedEvent,
    PlanStepCompletedEvent,
    PlanStepFailedEvent,
    PlanStepStartedEvent,
    PlanUpdatedEvent,
    UserInputRequestedEvent,
)
from agent_engine.core.models import ToolCall
from agent_engine.core.types import PlanStatus, PlanStepStatus


def _noop_tool(name):
    return define(name, f"{name} tool", {"type": "object", "properties": {}}, lambda args: name)


# ============================================
# Registry and function tools
# ============================================


class TestToolRegistry:
    def test_register_and_lookup(self):
        registry = ToolRegistry([_noop_tool("a"), _noop_tool("b")])
        assert len(registry) == 2
        assert "a" in registry
        assert registry.get("missing") is None
        assert [d.name for d in registry.declarations()] == ["a", "b"]

    def test_reregistering_replaces(self):
        registry = ToolRegistry([_noop_tool("a")])
        replacement = _noop_tool("a")
        registry.register(replacement)
        assert len(registry) == 1
        assert registry.get("a") is replacement

    def test_human_input_tools_are_classified(self):
        registry = ToolRegistry([_noop_tool("a"), UserInputTool()])
        assert registry.human_input_names() == {USER_INPUT_TOOL_NAME}
        assert registry.is_human_input(USER_INPUT_TOOL_NAME)
        assert not registry.is_human_input("a")

    def test_concurrent_registration(self):
        """Registration from several threads loses no tools."""
        registry = ToolRegistry()

        def register_batch(prefix):
            for i in range(50):
                registry.register(_noop_tool(f"{prefix}_{i}"))

        threads = [threading.Thread(target=register_batch, args=(p,)) for p in "wxyz"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 200
        assert len(registry.snapshot()) == 200


class TestFuncTool:
    @pytest.mark.asyncio
    async def test_sync_function(self):
        tool = define("upper", "Uppercase", {}, lambda args: args["text"].upper())
        assert await tool.execute(json.dumps({"text": "hi"})) == "HI"

    @pytest.mark.asyncio
    async def test_async_function_and_non_string_result(self):
        async def lookup(args):
            return {"city": args["city"], "temp": 21}

        tool = define("weather", "Weather", {}, lookup)
        assert json.loads(await tool.execute('{"city": "Paris"}')) == {"city": "Paris", "temp": 21}

    @pytest.mark.asyncio
    async def test_empty_arguments(self):
        tool = define("count", "Count args", {}, lambda args: str(len(args)))
        assert await tool.execute("") == "0"

    def test_declaration(self):
        schema = {"type": "object", "properties": {"x": {"type": "integer"}}}
        declaration = define("t", "desc", schema, lambda args: "").to_declaration()
        assert declaration.name == "t"
        assert declaration.parameters == schema

    def test_tool_adder_requires_attachment(self):
        class Installer(ToolAdderTool):
            name = "installer"
            description = "Installs tools"
            parameters = {"type": "object", "properties": {}}

            async def execute(self, args_json):
                return ""

        installer = Installer()
        with pytest.raises(RuntimeError):
            installer.add_tool(_noop_tool("extra"))

        registry = ToolRegistry()
        installer.set_tool_adder(registry.register)
        installer.add_tool(_noop_tool("extra"))
        assert "extra" in registry


# ============================================
# User input
# ============================================


class TestUserInputTool:
    @pytest.mark.asyncio
    async def test_direct_execution_is_refused(self):
        with pytest.raises(ToolExecutionError):
            await UserInputTool().execute('{"prompt": "?"}')

    @pytest.mark.asyncio
    async def test_send_input_event(self):
        events = []

        async def emitter(event):
            events.append(event)

        tool = UserInputTool()
        tool.set_event_emitter(emitter)
        await tool.send_input_event(
            ToolCall(
                id="call_1",
                name=USER_INPUT_TOOL_NAME,
                arguments={
                    "prompt": "Which account?",
                    "input_type": "credential-choice",
                    "options": ["work", "personal"],
                    "metadata": {"service": "github"},
                },
            )
        )

        assert len(events) == 1
        event = events[0]
        assert isinstance(event, UserInputRequestedEvent)
        assert event.tool_call_id == "call_1"
        assert event.prompt == "Which account?"
        assert event.input_type == "credential-choice"
        assert event.options == ["work", "personal"]
        assert event.metadata == {"service": "github"}

    @pytest.mark.asyncio
    async def test_send_input_event_sanitizes_arguments(self):
        events = []

        async def emitter(event):
            events.append(event)

        tool = UserInputTool()
        tool.set_event_emitter(emitter)
        await tool.send_input_event(
            ToolCall(
                id="call_2",
                name=USER_INPUT_TOOL_NAME,
                arguments={"prompt": "Name?", "input_type": "bogus", "options": "nope", "metadata": [1]},
            )
        )

        event = events[0]
        assert event.input_type == "text"
        assert event.options == []
        assert event.metadata == {}


# ============================================
# Plan manager
# ============================================


@pytest.fixture
def plan_events():
    return []


@pytest.fixture
def manager(plan_events):
    """Plan manager whose events land in plan_events."""
    async def emitter(event):
        plan_events.append(event)

    m = PlanManager()
    m.set_event_emitter(emitter)
    return m


async def _create(manager, *descriptions, goal="Ship release"):
    return await manager.create_plan(
        json.dumps({"goal": goal, "steps": [{"description": d} for d in descriptions]})
    )


class TestPlanManager:
    @pytest.mark.asyncio
    async def test_create_plan(self, manager, plan_events):
        message = await _create(manager, "Build", "Test")

        plan = manager.active_plan
        assert message == f"Plan created with 2 steps. Plan ID: {plan.id}"
        assert [s.id for s in plan.steps] == ["step_1", "step_2"]
        assert all(s.status == PlanStepStatus.PENDING for s in plan.steps)
        assert plan.status == PlanStatus.ACTIVE
        assert isinstance(plan_events[0], PlanCreatedEvent)

    @pytest.mark.asyncio
    async def test_create_plan_validation(self, manager):
        with pytest.raises(ToolExecutionError, match="goal is required"):
            await manager.create_plan(json.dumps({"steps": [{"description": "x"}]}))
        with pytest.raises(ToolExecutionError, match="at least one step"):
            await manager.create_plan(json.dumps({"goal": "g", "steps": []}))
        with pytest.raises(ToolExecutionError, match="invalid arguments"):
            await manager.create_plan("{not json")

    @pytest.mark.asyncio
    async def test_operations_require_plan(self, manager):
        with pytest.raises(ToolExecutionError, match="no active plan"):
            await manager.start_next_step()

    @pytest.mark.asyncio
    async def test_only_one_step_in_progress(self, manager):
        """Starting a second step while one runs is refused."""
        await _create(manager, "Build", "Test")
        message = await manager.start_next_step()
        assert message == "Started step 1/2: Build"

        with pytest.raises(ToolExecutionError, match="step already in progress: Build"):
            await manager.start_next_step()
        statuses = [s.status for s in manager.active_plan.steps]
        assert statuses.count(PlanStepStatus.IN_PROGRESS) == 1

    @pytest.mark.asyncio
    async def test_complete_requires_step_in_progress(self, manager):
        await _create(manager, "Build")
        with pytest.raises(ToolExecutionError, match="no step is currently in progress"):
            await manager.complete_current_step()

    @pytest.mark.asyncio
    async def test_walk_plan_to_completion(self, manager, plan_events):
        await _create(manager, "Build", "Test")

        await manager.start_next_step()
        message = await manager.complete_current_step(json.dumps({"result": "built"}))
        assert message == "Step completed: Build\nNext step: Test"
        assert manager.active_plan.status == PlanStatus.ACTIVE
        assert manager.active_plan.steps[0].result == "built"

        await manager.start_next_step()
        message = await manager.complete_current_step()
        assert message.endswith("All plan steps completed! Goal achieved: Ship release")
        assert manager.active_plan.status == PlanStatus.COMPLETED

        types = [type(e) for e in plan_events]
        assert types == [
            PlanCreatedEvent,
            PlanStepStartedEvent,
            PlanStepCompletedEvent,
            PlanStepStartedEvent,
            PlanStepCompletedEvent,
            PlanCompletedEvent,
        ]

        with pytest.raises(ToolExecutionError, match="no pending steps remaining"):
            await manager.start_next_step()

    @pytest.mark.asyncio
    async def test_add_step_at_end_and_before(self, manager, plan_events):
        await _create(manager, "Build", "Deploy")

        change = await manager.update_plan(json.dumps({"action": "add_step", "step_description": "Docs"}))
        assert change == "Added step: Docs"
        await manager.update_plan(
            json.dumps({"action": "add_step", "step_description": "Test", "position": "before:step_2"})
        )

        plan = manager.active_plan
        assert [s.description for s in plan.steps] == ["Build", "Test", "Deploy", "Docs"]
        assert [s.id for s in plan.steps] == ["step_1", "step_4", "step_2", "step_3"]
        assert isinstance(plan_events[-1], PlanUpdatedEvent)

    @pytest.mark.asyncio
    async def test_add_step_rejects_bad_position(self, manager):
        await _create(manager, "Build")
        with pytest.raises(ToolExecutionError, match="step not found: step_9"):
            await manager.update_plan(
                json.dumps({"action": "add_step", "step_description": "x", "position": "before:step_9"})
            )
        with pytest.raises(ToolExecutionError, match="invalid position"):
            await manager.update_plan(
                json.dumps({"action": "add_step", "step_description": "x", "position": "middle"})
            )

    @pytest.mark.asyncio
    async def test_current_step_index_follows_insertions(self, manager):
        await _create(manager, "Build", "Test")
        await manager.start_next_step()
        await manager.update_plan(
            json.dumps({"action": "add_step", "step_description": "Prep", "position": "before:step_1"})
        )

        plan = manager.active_plan
        assert plan.current().id == "step_1"
        assert plan.current_step == 1

    @pytest.mark.asyncio
    async def test_remove_step_restrictions(self, manager):
        await _create(manager, "Build", "Test")
        await manager.start_next_step()

        with pytest.raises(ToolExecutionError, match="cannot remove step in progress"):
            await manager.update_plan(json.dumps({"action": "remove_step", "step_id": "step_1"}))
        with pytest.raises(ToolExecutionError, match="step not found"):
            await manager.update_plan(json.dumps({"action": "remove_step", "step_id": "step_7"}))

        change = await manager.update_plan(json.dumps({"action": "remove_step", "step_id": "step_2"}))
        assert change == "Removed step: Test"

        await manager.complete_current_step()
        with pytest.raises(ToolExecutionError, match="only step"):
            await manager.update_plan(json.dumps({"action": "remove_step", "step_id": "step_1"}))

    @pytest.mark.asyncio
    async def test_removing_last_pending_step_completes_plan(self, manager, plan_events):
        """The plan completes as soon as every remaining step is completed."""
        await _create(manager, "Build", "Optional")
        await manager.start_next_step()
        await manager.complete_current_step()
        assert manager.active_plan.status == PlanStatus.ACTIVE

        await manager.update_plan(json.dumps({"action": "remove_step", "step_id": "step_2"}))

        assert manager.active_plan.status == PlanStatus.COMPLETED
        assert isinstance(plan_events[-1], PlanCompletedEvent)

    @pytest.mark.asyncio
    async def test_adding_step_reopens_completed_plan(self, manager):
        await _create(manager, "Build")
        await manager.start_next_step()
        await manager.complete_current_step()
        assert manager.active_plan.status == PlanStatus.COMPLETED

        await manager.update_plan(json.dumps({"action": "add_step", "step_description": "Announce"}))
        assert manager.active_plan.status == PlanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_invalid_action(self, manager):
        await _create(manager, "Build")
        with pytest.raises(ToolExecutionError, match="invalid action: rename"):
            await manager.update_plan(json.dumps({"action": "rename"}))

    @pytest.mark.asyncio
    async def test_fail_current_step(self, manager, plan_events):
        await _create(manager, "Build", "Test")
        await manager.start_next_step()

        step = await manager.fail_current_step("compiler crashed")

        assert step.status == PlanStepStatus.FAILED
        assert step.error == "compiler crashed"
        assert manager.active_plan.status == PlanStatus.FAILED
        assert manager.active_plan.has_failed_steps()
        assert isinstance(plan_events[-1], PlanStepFailedEvent)
        assert plan_events[-1].error == "compiler crashed"

    @pytest.mark.asyncio
    async def test_new_plan_replaces_active_one(self, manager):
        await _create(manager, "Build", goal="first")
        first_id = manager.active_plan.id
        await _create(manager, "Other", goal="second")
        assert manager.active_plan.id != first_id
        assert manager.active_plan.goal == "second"

    @pytest.mark.asyncio
    async def test_tools_share_the_manager(self):
        events = []

        async def emitter(event):
            events.append(event)

        manager = PlanManager()
        tools = {t.name: t for t in manager.tools()}
        assert set(tools) == {"create_plan", "start_next_step", "complete_current_step", "update_plan"}

        tools["create_plan"].set_event_emitter(emitter)
        await tools["create_plan"].execute(json.dumps({"goal": "g", "steps": [{"description": "s"}]}))
        await tools["start_next_step"].execute("{}")

        assert [type(e) for e in events] == [PlanCreatedEvent, PlanStepStartedEvent]
