"""Clients package containing the LLM client."""

from __future__ import annotations

from .llm_client import LLMClient, LLMClientError

__all__ = ["LLMClient", "LLMClientError"]
