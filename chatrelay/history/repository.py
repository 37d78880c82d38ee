#!/usr/bin/env python3
"""
Message Store Interface

This module defines the storage protocol every chat history backend implements.
Messages are keyed by id and grouped by thread; writes are idempotent upserts.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import Message, Thread


@runtime_checkable
class MessageStore(Protocol):
    """Protocol defining the interface for chat storage backends."""

    async def upsert_message(self, message: Message) -> None:
        """
        Insert or replace a message by id.

        Replaying the same id replaces parts and metadata but keeps the
        original created_at and position in the thread.
        """
        ...

    async def select_messages_by_thread(
        self, thread_id: str, limit: int | None = None
    ) -> list[Message]:
        """Messages of a thread, most recent last."""
        ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def select_thread(self, thread_id: str) -> Thread | None: ...

    async def insert_thread(self, thread: Thread) -> Thread: ...

    async def list_threads(self, user_id: str) -> list[Thread]: ...

    async def delete_thread(self, thread_id: str) -> bool: ...

    async def clear(self) -> None: ...
