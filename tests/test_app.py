"""Tests for application wiring from config."""

import pytest

from conftest import ScriptedModel, call, text_turn, tool_turn

from agent_engine.ai.agent import ChatRequest
from agent_engine.ai.tools.user_input import USER_INPUT_TOOL_NAME
from agent_engine.app import AgentApp
from agent_engine.config import AgentConfig, AppConfig, StorageConfig
from agent_engine.core.models import ToolResult
from agent_engine.core.types import FinishReason
from agent_engine.storage.base import Filter, NoOpStore
from agent_engine.storage.filestorage import FileStore
from agent_engine.storage.memory import InMemoryStore
from agent_engine.storage.sqlite import SQLiteStore


def _config(tmp_path, backend="memory", **agent):
    return AppConfig(
        agent=AgentConfig(**agent),
        storage=StorageConfig(
            backend=backend,
            db_path=str(tmp_path / "agent.db"),
            dir=str(tmp_path / "conversations"),
        ),
    )


class TestStoreSelection:
    @pytest.mark.parametrize(
        "backend,store_type",
        [("none", NoOpStore), ("memory", InMemoryStore), ("file", FileStore), ("sqlite", SQLiteStore)],
    )
    def test_backend(self, tmp_path, backend, store_type):
        app = AgentApp(_config(tmp_path, backend), model=ScriptedModel())
        assert isinstance(app.store, store_type)
        assert (app.db is not None) == (backend == "sqlite")

    @pytest.mark.asyncio
    async def test_sqlite_lifecycle(self, tmp_path):
        async with AgentApp(_config(tmp_path, "sqlite"), model=ScriptedModel()) as app:
            conv = await app.store.get_conversation(Filter(session_id="s1"))
            assert conv.session_id == "s1"
        assert app.db._conn is None
        assert (tmp_path / "agent.db").exists()


class TestBuiltinTools:
    def test_none_by_default(self, tmp_path):
        app = AgentApp(_config(tmp_path), model=ScriptedModel())
        assert app.builtin_tools() == []

    def test_enabled_by_flags(self, tmp_path):
        app = AgentApp(
            _config(tmp_path, enable_planning=True, enable_user_input=True),
            model=ScriptedModel(),
        )
        names = [t.name for t in app.builtin_tools()]
        assert names == [
            "create_plan",
            "start_next_step",
            "complete_current_step",
            "update_plan",
            USER_INPUT_TOOL_NAME,
        ]

    def test_plan_state_is_per_agent(self, tmp_path):
        app = AgentApp(_config(tmp_path, enable_planning=True), model=ScriptedModel())
        first = app.create_agent().registry.get("create_plan")
        second = app.create_agent().registry.get("create_plan")
        assert first is not second


class TestCreateAgent:
    @pytest.mark.asyncio
    async def test_agent_uses_config_and_store(self, tmp_path, echo_tool):
        model = ScriptedModel(
            [
                tool_turn(call("c1", "echo", text="hi")),
                text_turn("done"),
            ]
        )
        app = AgentApp(_config(tmp_path, system_prompt="Be brief.", max_iterations=3), model=model)
        agent = app.create_agent(tools=[echo_tool])

        result = await agent.chat_sync(ChatRequest(prompt="say hi", session_id="s1"))

        assert result.content == "done"
        assert result.finish_reason == FinishReason.STOP
        assert model.requests[0].system == "Be brief."
        assert [t.name for t in model.requests[0].tools] == ["echo"]

        saved = await app.store.get_conversation(Filter(session_id="s1"))
        assert [m.role for m in saved.messages] == ["user", "assistant", "tool", "assistant"]

    @pytest.mark.asyncio
    async def test_user_input_pause_through_app(self, tmp_path):
        model = ScriptedModel(
            [
                tool_turn(call("ask_1", USER_INPUT_TOOL_NAME, prompt="Which city?")),
                text_turn("Paris it is."),
            ]
        )
        app = AgentApp(_config(tmp_path, enable_user_input=True), model=model)

        paused = await app.create_agent().chat_sync(ChatRequest(prompt="weather", session_id="s1"))
        assert paused.finish_reason == FinishReason.HUMAN_INTERVENTION

        resumed = await app.create_agent().chat_sync(
            ChatRequest(session_id="s1", tool_results=[ToolResult(tool_call_id="ask_1", content="Paris")])
        )
        assert resumed.content == "Paris it is."
