"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from agent_engine.log import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id              TEXT    PRIMARY KEY,
    session_id      TEXT    NOT NULL DEFAULT '',
    user_id         TEXT,
    status          TEXT    NOT NULL CHECK(status IN ('active','interrupted','completed','failed')),
    messages_json   TEXT    NOT NULL DEFAULT '[]',
    metadata_json   TEXT    NOT NULL DEFAULT '{}',
    created_at      TEXT    NOT NULL,
    updated_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_session
    ON conversations(session_id, created_at);

CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id, created_at);

CREATE TABLE IF NOT EXISTS schema_version (
    version         INTEGER NOT NULL
);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA_SQL)
        await self._migrate()
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    async def _migrate(self) -> None:
        cursor = await self.conn.execute("SELECT MAX(version) AS version FROM schema_version")
        row = await cursor.fetchone()
        current = row["version"] if row and row["version"] is not None else 0
        if current < SCHEMA_VERSION:
            await self.conn.execute("DELETE FROM schema_version")
            await self.conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            logger.info("database_migrated", from_version=current, to_version=SCHEMA_VERSION)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
