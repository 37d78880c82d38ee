"""Error classification for terminal turn failures."""

from __future__ import annotations

from chatrelay.clients.llm_client import LLMClientError
from chatrelay.tools.errors import ToolInputError, ToolNotFoundError, ToolTimeoutError


class ThreadAccessError(Exception):
    """The thread exists but belongs to another user."""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' is not accessible")
        self.thread_id = thread_id


class MessageConflictError(Exception):
    """A request reused the id of a stored message it would overwrite."""

    def __init__(self, message_id: str):
        super().__init__(f"Message '{message_id}' already exists")
        self.message_id = message_id


def classify_error(error: BaseException) -> str:
    """Map an exception to the error_type reported to clients and stored in metadata."""
    if isinstance(error, ToolNotFoundError):
        return "tool_not_found"
    if isinstance(error, ToolInputError):
        return "invalid_tool_arguments"
    if isinstance(error, ToolTimeoutError | TimeoutError):
        return "tool_timeout"
    if isinstance(error, LLMClientError):
        return "llm_error"
    return "general"


def describe_error(error: BaseException) -> str:
    """User-facing message for a terminal error."""
    error_type = classify_error(error)
    if error_type == "llm_error":
        return "The model provider failed to complete the response. Please try again."
    if error_type == "tool_timeout":
        return "A tool took too long to respond."
    return str(error) or type(error).__name__
