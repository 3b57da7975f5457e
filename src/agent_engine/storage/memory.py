"""In-process conversation store."""

from __future__ import annotations

from agent_engine.core.errors import InvalidConversationError
from agent_engine.core.models import Conversation, utcnow
from agent_engine.log import get_logger
from agent_engine.storage.base import Filter, IndexedConversationStore, apply_window

logger = get_logger(__name__)


class InMemoryStore(IndexedConversationStore):
    """Dict-backed store with session and user indexes.

    Conversations are deep-copied on the way in and out, so callers never
    share mutable state with the store.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._session_index: dict[str, list[str]] = {}
        self._user_index: dict[str, list[str]] = {}

    async def save_conversation(self, conversation: Conversation) -> None:
        if not conversation.id:
            raise InvalidConversationError()

        conversation.updated_at = utcnow()
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

        if conversation.session_id:
            ids = self._session_index.setdefault(conversation.session_id, [])
            if conversation.id not in ids:
                ids.append(conversation.id)
        if conversation.user_id:
            ids = self._user_index.setdefault(conversation.user_id, [])
            if conversation.id not in ids:
                ids.append(conversation.id)

        logger.debug("conversation_saved", conversation_id=conversation.id, messages=len(conversation.messages))

    async def list_conversations(self, filter: Filter) -> list[Conversation]:
        if filter.session_id:
            ids = self._session_index.get(filter.session_id, [])
        elif filter.user_id:
            ids = self._user_index.get(filter.user_id, [])
        else:
            ids = list(self._conversations)

        found = [self._conversations[i] for i in ids if i in self._conversations]
        if filter.session_id and filter.user_id:
            found = [c for c in found if c.user_id == filter.user_id]
        return [c.model_copy(deep=True) for c in apply_window(found, filter)]

    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation is not None else None

    async def delete_conversation(self, conversation_id: str) -> bool:
        conversation = self._conversations.pop(conversation_id, None)
        if conversation is None:
            return False
        if conversation.session_id:
            _discard(self._session_index, conversation.session_id, conversation_id)
        if conversation.user_id:
            _discard(self._user_index, conversation.user_id, conversation_id)
        return True


def _discard(index: dict[str, list[str]], key: str, conversation_id: str) -> None:
    ids = index.get(key)
    if ids and conversation_id in ids:
        ids.remove(conversation_id)
        if not ids:
            del index[key]
