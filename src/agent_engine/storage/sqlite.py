"""SQLite-backed conversation store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import aiosqlite

from agent_engine.core.errors import InvalidConversationError, StoreError
from agent_engine.core.models import Conversation, Message, utcnow
from agent_engine.log import get_logger
from agent_engine.storage.base import Filter, IndexedConversationStore
from agent_engine.storage.database import Database

logger = get_logger(__name__)


class SQLiteStore(IndexedConversationStore):
    """One row per conversation; messages and metadata are stored as JSON."""

    def __init__(self, db: Database):
        self._db = db

    async def save_conversation(self, conversation: Conversation) -> None:
        if not conversation.id:
            raise InvalidConversationError()

        conversation.updated_at = utcnow()
        messages_json = json.dumps([m.model_dump(mode="json") for m in conversation.messages])
        try:
            await self._db.conn.execute(
                """INSERT INTO conversations
                   (id, session_id, user_id, status, messages_json, metadata_json, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       session_id = excluded.session_id,
                       user_id = excluded.user_id,
                       status = excluded.status,
                       messages_json = excluded.messages_json,
                       metadata_json = excluded.metadata_json,
                       updated_at = excluded.updated_at""",
                (
                    conversation.id,
                    conversation.session_id,
                    conversation.user_id,
                    str(conversation.status),
                    messages_json,
                    json.dumps(conversation.metadata),
                    conversation.created_at.isoformat(),
                    conversation.updated_at.isoformat(),
                ),
            )
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"failed to save conversation: {e}", conversation.id) from e
        logger.debug("conversation_saved", conversation_id=conversation.id, messages=len(conversation.messages))

    async def list_conversations(self, filter: Filter) -> list[Conversation]:
        clauses: list[str] = []
        params: list[Any] = []
        if filter.session_id:
            clauses.append("session_id = ?")
            params.append(filter.session_id)
        if filter.user_id:
            clauses.append("user_id = ?")
            params.append(filter.user_id)
        if filter.status is not None:
            clauses.append("status = ?")
            params.append(str(filter.status))

        sql = "SELECT * FROM conversations"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([filter.limit or -1, filter.offset or 0])

        try:
            cursor = await self._db.conn.execute(sql, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreError(f"failed to query conversations: {e}") from e
        return [self._row_to_conversation(row) for row in rows]

    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        try:
            cursor = await self._db.conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreError(f"failed to load conversation: {e}", conversation_id) from e
        return self._row_to_conversation(row) if row is not None else None

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            cursor = await self._db.conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"failed to delete conversation: {e}", conversation_id) from e
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        return Conversation(
            id=row["id"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            status=row["status"],
            messages=[Message.model_validate(m) for m in json.loads(row["messages_json"])],
            metadata=json.loads(row["metadata_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
