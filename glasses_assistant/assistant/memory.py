"""
Persistent conversation memory.

Optional collaborator: when enabled, completed exchanges are saved to a
SQLite database (photos as files next to it) so later sessions can search
them and use them as prompt context.
"""

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

from glasses_assistant.assistant.conversations import ConversationEntry, new_id
from glasses_assistant.assistant.transport import PhotoData

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    question TEXT NOT NULL,
    response TEXT NOT NULL,
    category TEXT,
    photo_path TEXT,
    project_id TEXT,
    step_number INTEGER,
    processing_time_ms INTEGER,
    created_at TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_conversations_user_timestamp ON conversations(user_id, timestamp);
"""

_COLUMNS = (
    "id, timestamp, user_id, question, response, category, photo_path, "
    "project_id, step_number, processing_time_ms"
)


class MemoryStore(ABC):
    """Abstract persistent memory."""

    @abstractmethod
    async def save_conversation(
        self, record: ConversationEntry, photo: Optional[PhotoData] = None
    ) -> str:
        """
        Persist a completed exchange.

        Returns:
            Stored record id
        """
        pass

    @abstractmethod
    async def search(self, user_id: str, query: str, limit: int = 10) -> list[dict[str, Any]]:
        """Records whose question, response or category contain ``query``."""
        pass

    @abstractmethod
    async def recent(self, user_id: str, limit: int = 5) -> list[dict[str, Any]]:
        """Most recent records, newest first."""
        pass


class SQLiteMemoryStore(MemoryStore):
    """
    SQLite-backed memory via aiosqlite.

    Args:
        db_path: Database file (parent directories are created)
        photos_dir: Where photos are written (defaults to ``<db dir>/photos``)
    """

    def __init__(self, db_path: str | Path, photos_dir: Optional[str | Path] = None):
        self.db_path = Path(db_path).expanduser()
        self.photos_dir = (
            Path(photos_dir).expanduser() if photos_dir else self.db_path.parent / "photos"
        )
        self._initialized = False

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        if not self._initialized:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self.db_path, detect_types=sqlite3.PARSE_DECLTYPES)
        db.row_factory = aiosqlite.Row
        try:
            if not self._initialized:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.executescript(_SCHEMA)
                await db.commit()
                self._initialized = True
            yield db
        finally:
            await db.close()

    async def initialize(self) -> None:
        """Create the database, schema and photo directory."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.photos_dir.mkdir(parents=True, exist_ok=True)
        async with self._connect():
            pass
        logger.info("Memory store ready at %s", self.db_path)

    def _write_photo(self, photo: PhotoData, user_id: str, record_id: str) -> Path:
        extension = "png" if "png" in photo.mime_type else "jpg"
        path = self.photos_dir / f"{user_id}_{record_id}.{extension}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(photo.data)
        return path

    async def save_conversation(
        self, record: ConversationEntry, photo: Optional[PhotoData] = None
    ) -> str:
        record_id = record.id or new_id("conv")
        photo_path = None
        if photo is not None:
            photo_path = str(
                await asyncio.to_thread(self._write_photo, photo, record.user_id, record_id)
            )

        async with self._connect() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO conversations ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record_id,
                    int(record.timestamp * 1000),
                    record.user_id,
                    record.question,
                    record.response,
                    record.category,
                    photo_path,
                    record.project_id,
                    record.step_number,
                    record.processing_time_ms,
                ),
            )
            await db.commit()

        logger.debug("Saved conversation %s for user %s", record_id, record.user_id)
        return record_id

    async def search(self, user_id: str, query: str, limit: int = 10) -> list[dict[str, Any]]:
        term = f"%{query}%"
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM conversations WHERE user_id = ? AND "
                "(question LIKE ? OR response LIKE ? OR category LIKE ?) "
                "ORDER BY timestamp DESC LIMIT ?",
                (user_id, term, term, term, limit),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def recent(self, user_id: str, limit: int = 5) -> list[dict[str, Any]]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM conversations WHERE user_id = ? "
                "ORDER BY timestamp DESC LIMIT ?",
                (user_id, limit),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]
