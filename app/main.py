"""
SolFlip Main Application Entry Point
FastAPI-based provably-fair coinflip service with WebSocket result feed.
"""

import sys
from pathlib import Path

# Add parent directory to path so imports work when running directly
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn
import orjson as json
import time
from collections import deque

from app.core.logger import init_logging, get_logger
from app.config import settings
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from app.routers import api
from app.core.database import Database
from app.core.games.coinflip import CoinflipGame
from app.core.streaks import StreakTracker
from app.core.websocket import ws_manager, normalize_ws_close_code

# Initialize logging first
init_logging(
    level=settings.logging.level,
    log_to_file=settings.logging.log_to_file,
    formatter=settings.logging.formatter,
    log_file_path=settings.paths.get_log_path(),
)
logger = get_logger("main")
ws_logger = get_logger("websocket")


# WebSocket Rate Limiting
WS_MAX_MESSAGES = 10  # Max messages per connection
WS_RATE_LIMIT_SECONDS = 2  # In this time window


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response


# ==================== Application Setup ====================


def create_app(storage: Database = None, seed_source=None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The storage backend and seed source can be injected (tests pass an
    in-memory Database); otherwise the configured SQLite file is used.
    """
    app = FastAPI(
        title=settings.server.name,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
    )

    if storage is None:
        storage = Database()

    app.state.coinflip = CoinflipGame(
        storage=storage,
        streaks=StreakTracker(storage),
        broadcaster=ws_manager,
        seed_source=seed_source,
    )

    app.state.limiter = api.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if settings.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api.router, prefix="/api")
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info(f"Application '{settings.server.name}' initialized")
    logger.info(f"Protocol tag: {settings.fairness.protocol_tag}, house edge: {settings.fairness.house_edge}")
    return app


# ==================== WebSocket Endpoint ====================


async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for real-time game results.
    Clients receive gameUpdate broadcasts and may send ping keep-alives.
    """
    client_ip = websocket.client.host if websocket.client else "unknown"
    await ws_manager.connect(websocket)
    ws_logger.info("WebSocket connected", extra={"client_ip": client_ip})

    timestamps = deque()

    try:
        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(event.get("code", 1000))
            data = event.get("text") or event.get("bytes") or b""

            # --- WebSocket Rate Limiting ---
            current_time = time.time()
            while timestamps and timestamps[0] < current_time - WS_RATE_LIMIT_SECONDS:
                timestamps.popleft()

            if len(timestamps) >= WS_MAX_MESSAGES:
                ws_logger.warning(
                    "WebSocket rate limit exceeded", extra={"client_ip": client_ip}
                )
                continue
            timestamps.append(current_time)

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue

            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_bytes(json.dumps({"type": "pong"}))

    except WebSocketDisconnect as e:
        ws_manager.disconnect(websocket)
        ws_logger.info(
            "WebSocket disconnected",
            extra={
                "client_ip": client_ip,
                "ws_disconnect_code": e.code,
                "ws_disconnect_reason": normalize_ws_close_code(e.code),
            },
        )
    except Exception as e:
        ws_manager.disconnect(websocket)
        ws_logger.error(
            "WebSocket error", extra={"client_ip": client_ip, "error": str(e)}
        )


# ==================== Global Exception Handler ====================


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions gracefully."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.server.debug else None,
        },
    )


# ==================== Main Entry Point ====================

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "app.main:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )
