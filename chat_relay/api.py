"""FastAPI entry point for the chat relay."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import iterate_in_threadpool, run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
import uvicorn

from .config import RelayConfig, UpstreamConfig
from .errors import AuthenticationError, RelayError
from .identity import HeaderIdentityResolver, IdentityResolver
from .service import DEFAULT_MODEL, TERMINAL_STATES, ChatRelayService, RelaySession
from .store import SqliteConversationStore
from .utils import setup_logging

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    """Inbound chat turn. Field contents are validated by the relay session."""

    model_config = ConfigDict(populate_by_name=True)

    message: Any = Field(None, description="User message to send to the model.")
    model: Any = Field(None, description="Model identifier; defaults to the configured model.")
    conversation_id: Any = Field(
        None,
        alias="conversationId",
        description="Existing conversation to continue; a new one is created when omitted.",
    )


def _error_body(exc: RelayError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": exc.message, "code": exc.code}
    body.update({key: value for key, value in exc.extra.items() if value not in (None, "")})
    return body


async def _relay_body(session: RelaySession) -> AsyncIterator[bytes]:
    """Iterate the session's byte stream off the event loop; stop it if the client leaves."""
    chunks = session.stream()
    try:
        async for chunk in iterate_in_threadpool(chunks):
            yield chunk
    finally:
        if session.state not in TERMINAL_STATES:
            session.cancel("client")
        chunks.close()


def create_app(
    config: Optional[RelayConfig] = None,
    *,
    service: Optional[ChatRelayService] = None,
    identity: Optional[IdentityResolver] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config = config or (service.config if service else RelayConfig())
    if service is None:
        store = SqliteConversationStore(config.store_path) if config.store_path else None
        service = ChatRelayService(config, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Draining pending reply persistence")
        app.state.service.shutdown(wait=True)

    app = FastAPI(title="Chat Relay", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.state.identity = identity or HeaderIdentityResolver(config.identity_header)

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=exc.http_status, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Invalid request body", "code": "INVALID_REQUEST"})

    def require_identity(request: Request) -> str:
        owner_id = request.app.state.identity.resolve(request.headers)
        if not owner_id:
            raise AuthenticationError()
        return owner_id

    @app.get("/health")
    async def health() -> Dict[str, str]:
        upstream = await run_in_threadpool(app.state.service.upstream_status)
        return {"status": "ok", "upstream": upstream}

    @app.post("/api/chat")
    async def chat(request: Request, payload: ChatRequest, owner_id: str = Depends(require_identity)):
        try:
            session = await run_in_threadpool(
                app.state.service.open_session,
                owner_id,
                payload.message,
                model=payload.model if "model" in payload.model_fields_set else DEFAULT_MODEL,
                conversation_id=payload.conversation_id,
            )
        except RelayError:
            raise
        except Exception as exc:
            logger.exception("Chat request failed")
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "message": str(exc) or "Unknown error"},
            )

        if await request.is_disconnected():
            logger.info("Client left before streaming began (conversation=%s)", session.conversation_id)
            session.abandon()
            return PlainTextResponse("Request aborted", status_code=499)

        headers = {
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            config.conversation_header: session.conversation_id or "",
        }
        return StreamingResponse(_relay_body(session), media_type="text/plain; charset=utf-8", headers=headers)

    @app.get("/api/conversations")
    async def conversations(owner_id: str = Depends(require_identity)) -> Dict[str, Any]:
        items = await run_in_threadpool(app.state.service.list_conversations, owner_id)
        return {"conversations": items}

    @app.get("/api/conversations/{conversation_id}/messages")
    async def messages(conversation_id: str, owner_id: str = Depends(require_identity)) -> Dict[str, Any]:
        items = await run_in_threadpool(app.state.service.list_messages, owner_id, conversation_id)
        return {"messages": items}

    @app.delete("/api/messages/{message_id}")
    async def delete_message(message_id: str, owner_id: str = Depends(require_identity)) -> Dict[str, bool]:
        await run_in_threadpool(app.state.service.delete_message, owner_id, message_id)
        return {"success": True}

    return app


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chat relay with streaming responses.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8004, help="Port to bind.")
    parser.add_argument("--log_dir", help="Directory for application logs.")
    parser.add_argument("--ollama_url", default="http://localhost:11434", help="Model server base URL.")
    parser.add_argument("--default_model", default="llama3.1:8b", help="Model used when a request names none.")
    parser.add_argument("--connect_timeout", type=float, default=10.0, help="Upstream connect timeout (seconds).")
    parser.add_argument("--read_timeout", type=float, default=120.0, help="Upstream idle read timeout (seconds).")
    parser.add_argument(
        "--max_stream_seconds",
        type=float,
        default=600.0,
        help="Maximum duration of a single upstream stream (seconds).",
    )
    parser.add_argument("--store_path", help="SQLite database file; an in-memory store is used when omitted.")
    parser.add_argument("--identity_header", default="X-User-Id", help="Header carrying the authenticated owner id.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    relay_cfg = RelayConfig(
        upstream=UpstreamConfig(
            base_url=args.ollama_url,
            default_model=args.default_model,
            connect_timeout=args.connect_timeout,
            read_timeout=args.read_timeout,
        ),
        max_stream_seconds=args.max_stream_seconds,
        identity_header=args.identity_header,
        store_path=args.store_path,
    )

    setup_logging(args.log_dir, logging.INFO)
    app = create_app(relay_cfg)
    logger.info("Starting chat relay on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
