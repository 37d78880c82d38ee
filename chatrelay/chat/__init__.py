"""
Chat Service Module

Streaming turn pipeline: emitter, stream tee, reconciliation buffer,
persistence guard and turn recorder, coordinated by the orchestrator.
"""

from .chat_orchestrator import ChatOrchestrator, TurnHandle, build_conversation
from .diagnostics import DiagnosticsSink, ReconciliationDiagnostic
from .emitter import ResponseEmitter
from .errors import MessageConflictError, ThreadAccessError, classify_error
from .models import ChatRequest, StreamEvent
from .persistence_guard import PersistenceGuard, PersistenceInvariantError
from .reconciliation import ReconciliationBuffer
from .stream_tee import StreamTee
from .turn_recorder import TurnRecorder

__all__ = [
    "ChatOrchestrator",
    "ChatRequest",
    "MessageConflictError",
    "DiagnosticsSink",
    "PersistenceGuard",
    "PersistenceInvariantError",
    "ReconciliationBuffer",
    "ReconciliationDiagnostic",
    "ResponseEmitter",
    "StreamEvent",
    "StreamTee",
    "ThreadAccessError",
    "TurnHandle",
    "TurnRecorder",
    "build_conversation",
    "classify_error",
]
