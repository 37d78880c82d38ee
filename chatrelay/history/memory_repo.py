#!/usr/bin/env python3
"""
In-Memory Message Store Implementation

Fast in-memory storage for session-only conversations.

CONFIG: chat.storage.type = "memory"
PURPOSE: Development/testing - all data lost on restart
FEATURES: Fastest performance, no persistence, simple cleanup
"""

from __future__ import annotations

import asyncio
import logging

from .models import Message, Thread

logger = logging.getLogger(__name__)


class InMemoryRepo:
    """Fast in-memory storage - configure with type='memory'. Data lost on restart."""

    def __init__(self) -> None:
        self._threads: dict[str, Thread] = {}
        self._messages: dict[str, Message] = {}
        # Insertion order per thread; upserts of a known id keep their slot
        self._thread_order: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    async def upsert_message(self, message: Message) -> None:
        async with self._lock:
            stored = message.model_copy(deep=True)
            existing = self._messages.get(message.id)
            if existing is not None:
                stored.created_at = existing.created_at
                stored.thread_id = existing.thread_id
                logger.debug("← Repository: replaced message %s", message.id)
            else:
                self._thread_order.setdefault(message.thread_id, []).append(message.id)
                logger.debug("← Repository: inserted message %s", message.id)
            self._messages[message.id] = stored

    async def select_messages_by_thread(
        self, thread_id: str, limit: int | None = None
    ) -> list[Message]:
        ids = self._thread_order.get(thread_id, [])
        if limit:
            ids = ids[-limit:]
        return [self._messages[i].model_copy(deep=True) for i in ids]

    async def get_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def select_thread(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    async def insert_thread(self, thread: Thread) -> Thread:
        async with self._lock:
            existing = self._threads.get(thread.id)
            if existing is not None:
                return existing
            self._threads[thread.id] = thread
            return thread

    async def list_threads(self, user_id: str) -> list[Thread]:
        threads = [t for t in self._threads.values() if t.user_id == user_id]
        return sorted(threads, key=lambda t: t.created_at)

    async def delete_thread(self, thread_id: str) -> bool:
        async with self._lock:
            if thread_id not in self._threads:
                return False
            del self._threads[thread_id]
            for message_id in self._thread_order.pop(thread_id, []):
                self._messages.pop(message_id, None)
            return True

    async def clear(self) -> None:
        """Clear all thread and message data from memory."""
        async with self._lock:
            self._threads.clear()
            self._messages.clear()
            self._thread_order.clear()
