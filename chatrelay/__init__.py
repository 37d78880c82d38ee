"""Streaming chat relay with tool calling and reconciled message history."""

__version__ = "0.1.0"
