"""
HTTP Server for the chat relay

Thin communication layer between clients and the chat orchestrator:
- POST /api/chat streams one turn as server-sent events
- /api/threads endpoints replay and delete stored history
- /ws/chat runs turns over a WebSocket
- /health reports tools, running turns and diagnostic counters

The app lifespan connects tool sources on startup and drains running turns
on shutdown.

A client that goes away only detaches its live stream; the turn keeps
running and is persisted by the orchestrator.
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from chatrelay.auth import AuthContext, Authorizer
from chatrelay.chat import ChatOrchestrator, ChatRequest, MessageConflictError, ThreadAccessError
from chatrelay.chat.chat_orchestrator import TurnHandle
from chatrelay.history.models import Thread

if TYPE_CHECKING:
    from chatrelay.config import Configuration
    from chatrelay.history.repository import MessageStore

logger = logging.getLogger(__name__)


class WebSocketMessage(BaseModel):
    """WebSocket message structure with validation."""

    action: str = "chat"
    request_id: str
    token: str | None = None
    payload: ChatRequest


class WebSocketResponse(BaseModel):
    request_id: str
    status: str  # "processing", "chunk", "completed", "error"
    chunk: dict[str, Any] = Field(default_factory=dict)


async def sse_stream(handle: TurnHandle) -> AsyncIterator[str]:
    """Encode a turn's live events as SSE, ending with [DONE]."""
    try:
        async for event in handle.live():
            yield f"data: {event.model_dump_json()}\n\n"
        yield "data: [DONE]\n\n"
    finally:
        handle.detach()


class ChatServer:
    """FastAPI app wiring; all business logic lives in the orchestrator."""

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        repo: MessageStore,
        authorizer: Authorizer,
        configuration: Configuration,
    ) -> None:
        self.orchestrator = orchestrator
        self.repo = repo
        self.authorizer = authorizer
        self.configuration = configuration
        self.http_config = configuration.get_http_config()
        self._server: uvicorn.Server | None = None
        self.app = self._create_app()

    async def _owned_thread(self, thread_id: str, auth: AuthContext) -> Thread:
        thread = await self.repo.select_thread(thread_id)
        if thread is None:
            raise HTTPException(status_code=404, detail="Thread not found")
        if thread.user_id != auth.user_id:
            raise HTTPException(status_code=403, detail="Thread is not accessible")
        return thread

    @contextlib.asynccontextmanager
    async def _lifespan(self, _app: FastAPI) -> AsyncIterator[None]:
        await self.orchestrator.initialize()
        try:
            yield
        finally:
            logger.info("Shutting down HTTP server and cleaning up resources...")
            try:
                await self.orchestrator.cleanup()
            except Exception as e:
                logger.error("Error during orchestrator cleanup: %s", e)

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="Chat Relay", lifespan=self._lifespan)

        if self.http_config["cors_origins"]:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=self.http_config["cors_origins"],
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
            )

        def require_auth(request: Request) -> AuthContext:
            auth = self.authorizer.authorize(request.headers)
            if auth is None:
                raise HTTPException(
                    status_code=401,
                    detail="Missing or invalid bearer token",
                    headers={"WWW-Authenticate": "Bearer"},
                )
            return auth

        @app.get("/health")
        async def health() -> dict[str, Any]:
            return {
                "status": "healthy",
                "tools": self.orchestrator.get_tool_count(),
                "active_turns": self.orchestrator.active_turns,
                "diagnostics": self.orchestrator.diagnostics.counts(),
            }

        @app.post("/api/chat")
        async def chat(
            body: ChatRequest, auth: AuthContext = Depends(require_auth)
        ) -> StreamingResponse:
            try:
                handle = await self.orchestrator.start_turn(auth.user_id, body)
            except ThreadAccessError as e:
                raise HTTPException(status_code=403, detail=str(e)) from e
            except MessageConflictError as e:
                raise HTTPException(status_code=409, detail=str(e)) from e

            logger.info("→ Frontend: streaming turn %s", handle.assistant_message_id)
            return StreamingResponse(
                sse_stream(handle),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                    "X-Message-Id": handle.assistant_message_id,
                },
            )

        @app.get("/api/threads")
        async def list_threads(auth: AuthContext = Depends(require_auth)) -> list[dict[str, Any]]:
            threads = await self.repo.list_threads(auth.user_id)
            return [t.model_dump(mode="json") for t in threads]

        @app.get("/api/threads/{thread_id}/messages")
        async def thread_messages(
            thread_id: str, auth: AuthContext = Depends(require_auth)
        ) -> list[dict[str, Any]]:
            await self._owned_thread(thread_id, auth)
            messages = await self.repo.select_messages_by_thread(thread_id)
            return [m.model_dump(mode="json") for m in messages]

        @app.delete("/api/threads/{thread_id}")
        async def delete_thread(
            thread_id: str, auth: AuthContext = Depends(require_auth)
        ) -> dict[str, Any]:
            await self._owned_thread(thread_id, auth)
            deleted = await self.repo.delete_thread(thread_id)
            logger.info("← Repository: deleted thread %s", thread_id)
            return {"deleted": deleted}

        @app.websocket("/ws/chat")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await self._handle_websocket_connection(websocket)

        return app

    # ---------- WebSocket transport ----------

    async def _handle_websocket_connection(self, websocket: WebSocket) -> None:
        await websocket.accept()
        header_auth = self.authorizer.authorize(websocket.headers)
        logger.info("WebSocket connection established from %s", websocket.client)

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = WebSocketMessage.model_validate(json.loads(data))
                except (json.JSONDecodeError, ValidationError) as e:
                    await self._send_error(websocket, "unknown", f"Invalid message format: {e}")
                    continue

                if message.action != "chat":
                    await self._send_error(
                        websocket,
                        message.request_id,
                        "Unknown action. Expected 'action': 'chat'",
                    )
                    continue

                auth = self.authorizer.authorize_token(message.token) or header_auth
                if auth is None:
                    await self._send_error(websocket, message.request_id, "Unauthorized")
                    continue

                await self._handle_chat_message(websocket, message, auth)
        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")

    async def _handle_chat_message(
        self, websocket: WebSocket, message: WebSocketMessage, auth: AuthContext
    ) -> None:
        request_id = message.request_id
        try:
            handle = await self.orchestrator.start_turn(auth.user_id, message.payload)
        except (ThreadAccessError, MessageConflictError) as e:
            await self._send_error(websocket, request_id, str(e))
            return

        await websocket.send_text(
            WebSocketResponse(
                request_id=request_id,
                status="processing",
                chunk={"message_id": handle.assistant_message_id},
            ).model_dump_json()
        )

        async def send(event: Any) -> None:
            await websocket.send_text(
                WebSocketResponse(
                    request_id=request_id,
                    status="chunk",
                    chunk=event.model_dump(mode="json"),
                ).model_dump_json()
            )

        if await handle.forward(send):
            await websocket.send_text(
                WebSocketResponse(request_id=request_id, status="completed").model_dump_json()
            )

    async def _send_error(self, websocket: WebSocket, request_id: str, error: str) -> None:
        response = WebSocketResponse(request_id=request_id, status="error", chunk={"error": error})
        with contextlib.suppress(Exception):
            await websocket.send_text(response.model_dump_json())

    # ---------- lifecycle ----------

    async def start_server(self) -> None:
        """Serve until shutdown; the app lifespan initializes and cleans up."""
        host, port = self.http_config["host"], self.http_config["port"]
        logger.info("Starting HTTP server on %s:%s", host, port)
        self._server = uvicorn.Server(
            uvicorn.Config(self.app, host=host, port=port, log_level="info")
        )
        await self._server.serve()

    def request_shutdown(self) -> None:
        """Ask uvicorn to exit gracefully so the lifespan cleanup runs."""
        if self._server is not None:
            self._server.should_exit = True
