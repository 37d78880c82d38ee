#!/usr/bin/env python3
"""
Chat History Module

Thread and message persistence with interchangeable storage backends.
"""

from __future__ import annotations

from .factory import create_repository
from .memory_repo import InMemoryRepo
from .models import Message, Part, TextPart, Thread, ToolPart
from .repository import MessageStore
from .sqlite_repo import SQLiteRepo

__all__ = [
    "InMemoryRepo",
    "Message",
    "MessageStore",
    "Part",
    "SQLiteRepo",
    "TextPart",
    "Thread",
    "ToolPart",
    "create_repository",
]
