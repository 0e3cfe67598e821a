"""Palchat Backend Application.

This is the main entry point for the Palchat realtime service: the live
messaging and presence core of a social chat app.

Modules:
    - chat: WebSocket connections, presence, room routing, message delivery
      and typing indicators
    - store: DuckDB-backed rooms, memberships and messages
    - auth: JWT verification of credentials issued by the account service
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from palchat import __version__
from palchat.chat.hub import ChatHub
from palchat.chat.rooms_router import router as rooms_router
from palchat.chat.router import router as chat_router
from palchat.config import AppConfig, get_config
from palchat.errors import ChatError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in ("httpx", "httpcore", "websockets", "uvicorn.access"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None, hub: Optional[ChatHub] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Application config. Loaded from the YAML files when omitted.
        hub: Pre-built hub (tests inject one backed by an in-memory store).
    """
    cfg = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        # Apply configured log level to root logger so that
        # `server.log_level: "debug"` in palchat.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, cfg.server.log_level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", cfg.server.log_level.upper())

        app.state.hub = hub or ChatHub.from_config(cfg)
        logger.info(
            f"Realtime core ready on http://{cfg.server.host}:{cfg.server.port} "
            f"(db={cfg.store.db_path})"
        )

        yield  # Application runs here

        # Shutdown
        await app.state.hub.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Palchat API",
        description="Realtime messaging and presence service for Palchat",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register all routers
    app.include_router(chat_router)
    app.include_router(rooms_router)

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
