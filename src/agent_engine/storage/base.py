"""Conversation store contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace

from agent_engine.core.models import Conversation
from agent_engine.core.types import ConversationStatus
from agent_engine.log import get_logger

logger = get_logger(__name__)


@dataclass
class Filter:
    session_id: str = ""
    user_id: str | None = None
    status: ConversationStatus | None = None
    limit: int | None = None
    offset: int | None = None


class ConversationStore(ABC):
    """Persistence of conversations keyed by session."""

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        ...

    @abstractmethod
    async def get_conversation(self, filter: Filter) -> Conversation:
        """Return the most recent matching conversation, creating one if none exists."""
        ...


class NoOpStore(ConversationStore):
    """Stateless store: nothing is persisted and every load starts fresh."""

    async def save_conversation(self, conversation: Conversation) -> None:
        return None

    async def get_conversation(self, filter: Filter) -> Conversation:
        return Conversation.new(filter.session_id, filter.user_id)


class IndexedConversationStore(ConversationStore):
    """Store that can list, load and delete; load-or-create is built on listing."""

    @abstractmethod
    async def list_conversations(self, filter: Filter) -> list[Conversation]:
        """Matching conversations, newest first, after offset/limit."""
        ...

    @abstractmethod
    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        ...

    async def get_conversation(self, filter: Filter) -> Conversation:
        matches = await self.list_conversations(replace(filter, limit=1))
        if matches:
            return matches[0]

        conversation = Conversation.new(filter.session_id, filter.user_id)
        await self.save_conversation(conversation)
        logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            session_id=filter.session_id,
        )
        return conversation

    async def delete_old_conversations(self, session_id: str, keep: int) -> int:
        """Keep the ``keep`` newest conversations of a session; return how many were deleted."""
        conversations = await self.list_conversations(Filter(session_id=session_id))
        deleted = 0
        for conversation in conversations[max(keep, 0):]:
            if await self.delete_conversation(conversation.id):
                deleted += 1
        if deleted:
            logger.info("conversations_pruned", session_id=session_id, deleted=deleted, kept=keep)
        return deleted


def apply_window(conversations: list[Conversation], filter: Filter) -> list[Conversation]:
    """Status filter, newest-first ordering, then offset and limit."""
    if filter.status is not None:
        conversations = [c for c in conversations if c.status == filter.status]
    conversations = sorted(conversations, key=lambda c: c.created_at, reverse=True)
    if filter.offset:
        conversations = conversations[filter.offset:]
    if filter.limit:
        conversations = conversations[: filter.limit]
    return conversations
