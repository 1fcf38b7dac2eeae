"""
FastAPI application for the Glasses Assistant server.

Serves the glasses bridge websocket and the read-only dashboard API.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from glasses_assistant import __version__
from glasses_assistant.assistant.core import GlassesAssistant
from glasses_assistant.config import get_config
from glasses_assistant.server.schemas import HealthResponse

# Global assistant instance
_assistant: GlassesAssistant | None = None

logger = logging.getLogger(__name__)


def get_assistant() -> GlassesAssistant:
    """Get the global assistant instance."""
    global _assistant
    if _assistant is None:
        _assistant = GlassesAssistant(get_config())
    return _assistant


def set_assistant(assistant: Optional[GlassesAssistant]) -> None:
    """Replace the global assistant (used by tests)."""
    global _assistant
    _assistant = assistant


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    assistant = get_assistant()
    if assistant.memory is not None and hasattr(assistant.memory, "initialize"):
        await assistant.memory.initialize()
    logger.info("Glasses assistant server started (mode=%s)", assistant.config.mode)

    yield

    await assistant.shutdown()
    logger.info("Glasses assistant server stopped")


def create_app(
    assistant: Optional[GlassesAssistant] = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        assistant: Assistant to serve (default: the global instance)
        cors_origins: CORS allowed origins (default: from config)

    Returns:
        FastAPI application
    """
    config = get_config()
    if assistant is not None:
        set_assistant(assistant)

    app = FastAPI(
        title="Glasses Assistant API",
        description="Smart glasses voice assistant with a live conversation dashboard",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    origins = cors_origins or config.server.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from glasses_assistant.server.glasses import router as glasses_router
    from glasses_assistant.server.routes import router as dashboard_router

    app.include_router(dashboard_router, prefix="/api", tags=["Dashboard"])
    app.include_router(glasses_router, tags=["Glasses"])

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        current = get_assistant()
        return HealthResponse(
            status="ok",
            version=__version__,
            mode=current.config.mode,
            step_tracking=current.config.step_tracking,
            active_users=current.registry.active_count(),
            memory_enabled=current.memory is not None,
        )

    return app


def run_server(
    host: str | None = None,
    port: int | None = None,
    reload: bool = False,
) -> None:
    """
    Run the server.

    Args:
        host: Host to bind to
        port: Port to bind to
        reload: Enable auto-reload (development)
    """
    import uvicorn

    config = get_config()

    uvicorn.run(
        "glasses_assistant.server.app:create_app",
        factory=True,
        host=host or config.server.host,
        port=port or config.server.port,
        reload=reload,
    )
