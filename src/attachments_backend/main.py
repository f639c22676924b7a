from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import cast

import httpx
from fastapi import FastAPI, HTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from attachments_backend.config import settings
from attachments_backend.db import dispose_engine_cache
from attachments_backend.error_handlers import register_error_handlers
from attachments_backend.integrations.storage.object_storage import get_object_storage
from attachments_backend.routers import attachments
from attachments_backend.services.cleanup import CleanupTrigger


class RequestIdMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app: ASGIApp = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id_header: bytes | None = None
        inbound_headers = cast(list[tuple[bytes, bytes]], scope.get("headers") or [])
        for key, value in inbound_headers:
            if key.lower() == b"x-request-id":
                value = value.strip()
                if value:
                    request_id_header = value
                break

        if request_id_header is None:
            request_id_header = str(uuid.uuid4()).encode("ascii")

        # latin-1 is a 1-1 mapping for bytes -> str.
        scope.setdefault("state", {})["request_id"] = request_id_header.decode("latin-1")

        async def send_wrapper(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = cast(list[tuple[bytes, bytes]], message.get("headers", []))
                headers = [(k, v) for (k, v) in headers if k.lower() != b"x-request-id"]
                headers.append((b"x-request-id", request_id_header))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

logger = logging.getLogger(__name__)
for msg in settings.security_warnings():
    logger.warning("SECURITY WARNING: %s", msg)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    # Process-owned collaborators; request handlers only borrow them.
    app.state.http_client = httpx.AsyncClient(timeout=settings.peer_request_timeout_seconds)
    app.state.cleanup = CleanupTrigger(get_object_storage())
    try:
        yield
    finally:
        cleanup = cast(CleanupTrigger, app.state.cleanup)
        if cleanup.pending:
            logger.info("waiting for %d file cleanup task(s)", cleanup.pending)
        await cleanup.drain()
        await app.state.http_client.aclose()
        app.state.http_client = None
        dispose_engine_cache()


app = FastAPI(title=settings.app_name, lifespan=_lifespan)

app.add_middleware(RequestIdMiddleware)
register_error_handlers(app)


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(attachments.router, prefix=settings.api_prefix)


@app.api_route(
    f"{settings.api_prefix.rstrip('/')}/{{path:path}}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    include_in_schema=False,
)
async def _api_fallback_not_found(path: str) -> None:  # noqa: ARG001
    raise HTTPException(status_code=404, detail="Not Found")
