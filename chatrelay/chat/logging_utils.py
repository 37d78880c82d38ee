"""
Chat Logging Utilities

Shared logging helpers with per-module feature flags. Feature flags are set
by main._configure_advanced_logging and cached on the logging module.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger(__name__)


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature is enabled for a module."""
    module_features = getattr(logging, "_module_features", {}).get(module, {})
    return bool(module_features.get(feature, False))


def _truncate(value: Any, length: int) -> str:
    text = str(value)
    return text[:length] + "..." if len(text) > length else text


def log_llm_reply(
    content: str,
    tool_calls: list[dict[str, Any]],
    context: str,
    model: str,
    truncate_length: int = 500,
) -> None:
    """Log one completed LLM hop when the chat.llm_replies feature is on."""
    if not should_log_feature("chat", "llm_replies"):
        return

    log_parts = [f"LLM Reply ({context}):"]
    if content:
        log_parts.append(f"Content: {_truncate(content, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, call in enumerate(tool_calls):
            name = call.get("function", {}).get("name", "unknown")
            log_parts.append(f"  [{i}] {name}")
    log_parts.append(f"Model: {model}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if total_calls > 1:
        logger.info(
            "→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls
        )
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, output: Any) -> None:
    logger.info("← Tool[%s]: success, output length: %d", tool_name, len(str(output)))
    if should_log_feature("tools", "tool_results"):
        logger.info("← Tool[%s]: results: %s", tool_name, _truncate(output, 200))


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_args_error(tool_name: str, error: Exception) -> None:
    """Log malformed tool arguments from the model."""
    logger.error("Malformed JSON arguments for %s: %s", tool_name, error)


def log_tool_arguments(
    tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500
) -> None:
    if not should_log_feature("tools", "tool_arguments"):
        return
    logger.info(
        "→ Tool[%s]: arguments (%s): %s",
        tool_name,
        context,
        _truncate(arguments, truncate_length),
    )


@asynccontextmanager
async def log_performance(operation_name: str) -> AsyncIterator[None]:
    """Log how long the wrapped block took."""
    start_time = time.monotonic()
    try:
        yield
    finally:
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info("⏱️ %s completed in %.2fms", operation_name, elapsed_ms)
