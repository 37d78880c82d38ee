#!/usr/bin/env python3
"""
Repository Factory

Factory function to create appropriate repository based on configuration.
"""

from __future__ import annotations

import logging
from typing import Any

from .memory_repo import InMemoryRepo
from .repository import MessageStore
from .sqlite_repo import SQLiteRepo

logger = logging.getLogger(__name__)


def create_repository(config: dict[str, Any]) -> MessageStore:
    """Create the message store selected by chat.storage.type."""
    storage_type = config.get("type", "memory")

    if storage_type == "memory":
        logger.info("Using in-memory message store (data lost on restart)")
        return InMemoryRepo()
    if storage_type == "sqlite":
        db_path = config.get("db_path", "chat_history.db")
        logger.info("Using SQLite message store at %s", db_path)
        return SQLiteRepo(db_path)

    raise ValueError(f"Unknown storage type '{storage_type}'")
