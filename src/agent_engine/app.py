"""Application wiring: provider, conversation store and agents built from config."""

from __future__ import annotations

import asyncio

from agent_engine.ai.agent import Agent, Hooks
from agent_engine.ai.providers.base import LanguageModel
from agent_engine.ai.providers.factory import create_provider
from agent_engine.ai.tools.base import Tool
from agent_engine.ai.tools.planning import PlanManager
from agent_engine.ai.tools.user_input import UserInputTool
from agent_engine.config import AppConfig
from agent_engine.log import get_logger
from agent_engine.storage.base import ConversationStore, NoOpStore
from agent_engine.storage.database import Database

logger = get_logger(__name__)


class AgentApp:
    """Owns the long-lived pieces and hands out one ``Agent`` per chat."""

    def __init__(self, config: AppConfig, model: LanguageModel | None = None):
        self.config = config
        self.model = model or create_provider(config.provider)
        self.db: Database | None = None
        self.store = self._create_store()

    async def start(self) -> None:
        if self.db is not None:
            await self.db.initialize()
        logger.info(
            "agent_app_started",
            model=self.model.id,
            storage=self.config.storage.backend,
        )

    async def stop(self) -> None:
        await self.model.close()
        if self.db is not None:
            await self.db.close()
        logger.info("agent_app_stopped")

    async def __aenter__(self) -> AgentApp:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def _create_store(self) -> ConversationStore:
        storage = self.config.storage
        match storage.backend:
            case "none":
                return NoOpStore()
            case "memory":
                from agent_engine.storage.memory import InMemoryStore

                return InMemoryStore()
            case "file":
                from agent_engine.storage.filestorage import FileStore

                return FileStore(storage.dir)
            case "sqlite":
                from agent_engine.storage.sqlite import SQLiteStore

                self.db = Database(storage.db_path)
                return SQLiteStore(self.db)
            case _:
                raise ValueError(f"Unknown storage backend: {storage.backend}")

    def builtin_tools(self) -> list[Tool]:
        """Tools switched on in the agent config. Plan state is per call."""
        tools: list[Tool] = []
        if self.config.agent.enable_planning:
            tools.extend(PlanManager().tools())
        if self.config.agent.enable_user_input:
            tools.append(UserInputTool())
        return tools

    def create_agent(
        self,
        tools: tuple[Tool, ...] | list[Tool] = (),
        hooks: Hooks | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Agent:
        agent_cfg = self.config.agent
        return Agent(
            self.model,
            [*self.builtin_tools(), *tools],
            store=self.store,
            system_prompt=agent_cfg.system_prompt,
            max_iterations=agent_cfg.max_iterations,
            conversation_history=agent_cfg.conversation_history,
            hooks=hooks,
            cancel_event=cancel_event,
        )
