"""Courier Backend Application.

Courier is a real-time messaging backend: clients exchange chat messages
over a WebSocket and a thin JSON/HTTP surface, with delivery and read
receipts, presence broadcast and a short-lived cache of recent messages.

Modules:
    - chat: dispatch engine, presence, cache, WebSocket and message endpoints
    - chats: chat membership directory
    - store: DuckDB message log
    - media: uploaded image storage
    - auth: identity token verification
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courier.chat.messages_router import router as messages_router
from courier.chat.router import router as ws_router
from courier.chats.router import router as chats_router
from courier.config import AppConfig, get_config
from courier.errors import CourierError
from courier.media.router import router as media_router
from courier.services import build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "redis",
    "httpx",
    "httpcore",
    "multipart",
    "python_multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application around a fresh service container."""
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in courier.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        services = build_services(config)
        app.state.services = services
        await services.start()
        logger.info(
            f"Courier running on http://{config.server.host}:{config.server.port}"
        )

        yield  # Application runs here

        # Shutdown
        await services.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Courier API",
        description="Real-time messaging backend with receipts and presence",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CourierError)
    async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.kind, "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"] if part != "body")
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "message": f"Invalid request: {fields}"},
        )

    # Register all routers
    app.include_router(ws_router)
    app.include_router(messages_router)
    app.include_router(chats_router)
    app.include_router(media_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
