"""Conversation store with one JSON file per conversation."""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import ValidationError

from agent_engine.core.errors import InvalidConversationError, StoreError
from agent_engine.core.models import Conversation, utcnow
from agent_engine.log import get_logger
from agent_engine.storage.base import Filter, IndexedConversationStore, apply_window

logger = get_logger(__name__)

INDEX_FILE = "index.json"


class FileStore(IndexedConversationStore):
    """Stores ``<id>.json`` files plus an ``index.json`` of session and user ids.

    A missing index is rebuilt by scanning the directory.
    """

    def __init__(self, base_dir: str | Path = "./conversations"):
        self._base_dir = Path(base_dir)
        self._session_index: dict[str, list[str]] = {}
        self._user_index: dict[str, list[str]] = {}
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"failed to create base directory {self._base_dir}: {e}") from e

        if self._index_path.exists():
            self._load_index()
        else:
            self._rebuild_index()

    @property
    def _index_path(self) -> Path:
        return self._base_dir / INDEX_FILE

    def _conversation_path(self, conversation_id: str) -> Path:
        return self._base_dir / f"{conversation_id}.json"

    def _load_index(self) -> None:
        try:
            data = json.loads(self._index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"failed to load index: {e}") from e
        self._session_index = data.get("session_index", {})
        self._user_index = data.get("user_index", {})

    def _save_index(self) -> None:
        data = {"session_index": self._session_index, "user_index": self._user_index}
        self._write_atomic(self._index_path, json.dumps(data, indent=2))

    def _rebuild_index(self) -> None:
        self._session_index = {}
        self._user_index = {}
        for path in sorted(self._base_dir.glob("*.json")):
            if path.name == INDEX_FILE:
                continue
            conversation = self._read(path.stem)
            if conversation is None:
                continue
            self._index(conversation)
        self._save_index()
        logger.info("conversation_index_rebuilt", path=str(self._base_dir), sessions=len(self._session_index))

    def _index(self, conversation: Conversation) -> None:
        if conversation.session_id:
            ids = self._session_index.setdefault(conversation.session_id, [])
            if conversation.id not in ids:
                ids.append(conversation.id)
        if conversation.user_id:
            ids = self._user_index.setdefault(conversation.user_id, [])
            if conversation.id not in ids:
                ids.append(conversation.id)

    def _read(self, conversation_id: str) -> Conversation | None:
        path = self._conversation_path(conversation_id)
        if not path.exists():
            return None
        try:
            return Conversation.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("conversation_file_unreadable", path=str(path), error=str(e))
            return None

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StoreError(f"failed to write {path.name}: {e}") from e

    async def save_conversation(self, conversation: Conversation) -> None:
        if not conversation.id:
            raise InvalidConversationError()

        conversation.updated_at = utcnow()
        self._write_atomic(
            self._conversation_path(conversation.id),
            conversation.model_dump_json(indent=2),
        )
        self._index(conversation)
        self._save_index()
        logger.debug("conversation_saved", conversation_id=conversation.id, messages=len(conversation.messages))

    async def list_conversations(self, filter: Filter) -> list[Conversation]:
        if filter.session_id:
            ids = list(self._session_index.get(filter.session_id, []))
        elif filter.user_id:
            ids = list(self._user_index.get(filter.user_id, []))
        else:
            ids = [p.stem for p in self._base_dir.glob("*.json") if p.name != INDEX_FILE]

        found = [c for c in (self._read(i) for i in ids) if c is not None]
        if filter.session_id and filter.user_id:
            found = [c for c in found if c.user_id == filter.user_id]
        return apply_window(found, filter)

    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        return self._read(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        conversation = self._read(conversation_id)
        if conversation is None:
            return False
        try:
            self._conversation_path(conversation_id).unlink()
        except OSError as e:
            raise StoreError(f"failed to delete conversation: {e}", conversation_id) from e

        for index, key in (
            (self._session_index, conversation.session_id),
            (self._user_index, conversation.user_id),
        ):
            ids = index.get(key or "")
            if ids and conversation_id in ids:
                ids.remove(conversation_id)
                if not ids:
                    del index[key]
        self._save_index()
        return True
