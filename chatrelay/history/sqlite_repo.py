#!/usr/bin/env python3
"""
SQLite Message Store Implementation

SQLite storage for chat threads and messages with async access.

CONFIG: chat.storage.type = "sqlite", chat.storage.db_path
PURPOSE: Durable history that survives restarts
FEATURES: WAL mode, JSON-serialized parts, idempotent upserts by message id
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import aiosqlite
from pydantic import TypeAdapter

from .models import Message, Part, Thread

logger = logging.getLogger(__name__)

_PARTS_ADAPTER: TypeAdapter[list[Part]] = TypeAdapter(list[Part])


class SQLiteRepo:
    """SQLite storage - configure with type='sqlite'."""

    def __init__(self, db_path: str = "chat_history.db"):
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        """Initialize database schema if not already done."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                # Enable WAL mode for better concurrency
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute("PRAGMA temp_store=memory")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS chat_threads (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        title TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS chat_messages (
                        id TEXT PRIMARY KEY,
                        thread_id TEXT NOT NULL,
                        seq INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        parts TEXT NOT NULL,
                        metadata TEXT,
                        created_at TEXT NOT NULL
                    )
                """)

                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_thread_user
                    ON chat_threads(user_id)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_message_thread_seq
                    ON chat_messages(thread_id, seq)
                """)

                await db.commit()

            self._initialized = True

    def _serialize_message(self, message: Message) -> dict[str, Any]:
        """Convert Message to database row format (seq assigned on insert)."""
        return {
            "id": message.id,
            "thread_id": message.thread_id,
            "role": message.role,
            "parts": json.dumps(
                [p.model_dump(mode="json") for p in message.parts]
            ),
            "metadata": json.dumps(message.metadata, default=str)
            if message.metadata
            else None,
            "created_at": message.created_at.isoformat(),
        }

    def _deserialize_message(self, row: dict[str, Any]) -> Message:
        """Convert database row to Message."""
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            role=row["role"],
            parts=_PARTS_ADAPTER.validate_python(json.loads(row["parts"])),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _deserialize_thread(self, row: dict[str, Any]) -> Thread:
        return Thread(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def upsert_message(self, message: Message) -> None:
        await self._ensure_initialized()

        row = self._serialize_message(message)
        async with aiosqlite.connect(self.db_path) as db:
            # seq is only computed for new rows; ON CONFLICT keeps the original
            # seq, thread and created_at so replays never reorder history
            await db.execute(
                """
                INSERT INTO chat_messages
                    (id, thread_id, seq, role, parts, metadata, created_at)
                VALUES (
                    :id, :thread_id,
                    (SELECT COALESCE(MAX(seq), 0) + 1 FROM chat_messages
                     WHERE thread_id = :thread_id),
                    :role, :parts, :metadata, :created_at
                )
                ON CONFLICT(id) DO UPDATE SET
                    parts = excluded.parts,
                    metadata = excluded.metadata
                """,
                row,
            )
            await db.commit()
        logger.debug("← Repository: upserted message %s", message.id)

    async def select_messages_by_thread(
        self, thread_id: str, limit: int | None = None
    ) -> list[Message]:
        await self._ensure_initialized()

        if limit:
            # Most recent `limit` rows, returned oldest first
            query = """
                SELECT * FROM (
                    SELECT * FROM chat_messages WHERE thread_id = ?
                    ORDER BY seq DESC LIMIT ?
                ) ORDER BY seq
            """
            params: list[Any] = [thread_id, limit]
        else:
            query = "SELECT * FROM chat_messages WHERE thread_id = ? ORDER BY seq"
            params = [thread_id]

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [self._deserialize_message(dict(row)) for row in rows]

    async def get_message(self, message_id: str) -> Message | None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM chat_messages WHERE id = ?", (message_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._deserialize_message(dict(row)) if row else None

    async def select_thread(self, thread_id: str) -> Thread | None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM chat_threads WHERE id = ?", (thread_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._deserialize_thread(dict(row)) if row else None

    async def insert_thread(self, thread: Thread) -> Thread:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO chat_threads (id, user_id, title, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (thread.id, thread.user_id, thread.title, thread.created_at.isoformat()),
            )
            await db.commit()

        stored = await self.select_thread(thread.id)
        return stored or thread

    async def list_threads(self, user_id: str) -> list[Thread]:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM chat_threads WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._deserialize_thread(dict(row)) for row in rows]

    async def delete_thread(self, thread_id: str) -> bool:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM chat_threads WHERE id = ?", (thread_id,)
            )
            deleted = cursor.rowcount > 0
            await db.execute(
                "DELETE FROM chat_messages WHERE thread_id = ?", (thread_id,)
            )
            await db.commit()
            return deleted

    async def clear(self) -> None:
        """Clear all thread and message data from the SQLite database."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM chat_messages")
            await db.execute("DELETE FROM chat_threads")
            await db.commit()
