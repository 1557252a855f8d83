"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .config import AppConfig, load_config
from .db import init_db
from .services.agent_sessions import AgentSessionManager, SessionNotFoundError
from .services.event_bus import EventBus
from .services.turn_state import SessionBusyError

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("agentdesk.security")

MAX_REQUEST_BODY_BYTES = 2 * 1024 * 1024  # 2 MB


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: AppConfig = app.state.config
    db_path = config.app.data_dir / "agentdesk.db"
    app.state.db = init_db(db_path)
    app.state.event_bus = EventBus()

    manager = AgentSessionManager(config, app.state.db, event_bus=app.state.event_bus)
    manager.startup()
    app.state.session_manager = manager
    logger.info("Agent sessions ready (agent command: %s, db: %s)", config.agent.command, db_path)

    yield

    await manager.close_all()
    app.state.db.close()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        return response


class MaxBodySizeMiddleware(BaseHTTPMiddleware):
    """Reject requests with Content-Length exceeding the limit."""

    def __init__(self, app: FastAPI, max_body_size: int = MAX_REQUEST_BODY_BYTES) -> None:
        super().__init__(app)
        self.max_body_size = max_body_size

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_body_size:
            security_logger.warning(
                "Request body too large from %s: %s bytes",
                request.client.host if request.client else "unknown",
                content_length,
            )
            return JSONResponse(status_code=413, content={"detail": "Request body too large"})
        return await call_next(request)


class BearerTokenMiddleware(BaseHTTPMiddleware):
    """Require ``Authorization: Bearer <token>`` on every /api/ request."""

    def __init__(self, app: FastAPI, token_hash: str) -> None:
        super().__init__(app)
        self.token_hash = token_hash

    def _check_token(self, provided: str) -> bool:
        provided_hash = hashlib.sha256(provided.encode()).hexdigest()
        return hmac.compare_digest(provided_hash, self.token_hash)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith("/api/"):
            return await call_next(request)

        auth = request.headers.get("authorization", "")
        if auth.startswith("Bearer ") and self._check_token(auth[7:]):
            return await call_next(request)

        # EventSource cannot set headers
        query_token = request.query_params.get("token", "")
        if query_token and request.method == "GET" and self._check_token(query_token):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        security_logger.warning("Authentication failed from %s: %s %s", client_ip, request.method, path)
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})


def create_app(config: AppConfig | None = None, auth_token: str | None = None) -> FastAPI:
    if config is None:
        config = load_config()

    from . import __version__

    app = FastAPI(
        title="AgentDesk",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SessionBusyError)
    async def session_busy_handler(request: Request, exc: SessionBusyError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        security_logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "An internal error occurred"})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:" + str(config.app.port), "http://localhost:" + str(config.app.port)],
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MaxBodySizeMiddleware)

    auth_token = auth_token or secrets.token_urlsafe(32)
    token_hash = hashlib.sha256(auth_token.encode()).hexdigest()
    app.add_middleware(BearerTokenMiddleware, token_hash=token_hash)
    app.state.auth_token = auth_token

    from .routers import agents, events, queue

    app.include_router(agents.router, prefix="/api")
    app.include_router(queue.router, prefix="/api")
    app.include_router(events.router, prefix="/api")

    @app.get("/api/health")
    async def health(request: Request):
        manager: AgentSessionManager = request.app.state.session_manager
        return {"status": "ok", "version": __version__, "live_sessions": len(manager.sessions)}

    return app
