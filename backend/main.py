"""
Application factory for FastAPI.

The factory pattern allows for:
- Easy testing with custom settings
- Multiple app instances with different configurations
- Clear separation of app creation from route definitions

Usage:
    from backend.main import create_app
    from backend.settings import Settings

    # Default app (uses get_settings())
    app = create_app()

    # Test app with custom settings
    test_settings = Settings(environment="test", _env_file=None)
    test_app = create_app(settings=test_settings)
"""

import asyncio
import logging
import signal
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from backend.observability import configure_observability, shutdown_observability
from backend.settings import Settings, get_settings
from backend.sse_tracking import get_sse_connection_count

logger = logging.getLogger(__name__)

# Detached generations get this long to record their outcome on shutdown
_PENDING_WORK_GRACE_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        settings: Optional Settings instance. If not provided, uses get_settings()
                  which loads from environment variables.

    Returns:
        Configured FastAPI application instance.
    """
    if settings is None:
        settings = get_settings()

    configure_observability(settings)
    _init_sentry(settings)

    app = FastAPI(
        title="Plan Generation API",
        description="Streaming orchestration for AI plan generation",
        version="1.0.0",
    )

    # Store settings on app state for middleware access
    app.state.settings = settings

    _configure_cors(app, settings)
    _add_sse_headers_middleware(app)

    _include_routers(app)

    _register_shutdown(app, settings)

    return app


def _init_sentry(settings: Settings) -> None:
    """Initialize Sentry SDK if DSN is configured."""
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            release=settings.render_git_commit,
            traces_sample_rate=0.1,
            profiles_sample_rate=0.1,
        )
        logger.info(
            "Sentry initialized for generation-api (release=%s)",
            settings.render_git_commit or "unknown",
        )


def _configure_cors(app: FastAPI, settings: Settings) -> None:
    """Configure CORS middleware for the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


class SSEHeadersMiddleware(BaseHTTPMiddleware):
    """Add X-Accel-Buffering: no header for SSE endpoints."""

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            response.headers["X-Accel-Buffering"] = "no"
            response.headers["Cache-Control"] = "no-cache"
        return response


def _add_sse_headers_middleware(app: FastAPI) -> None:
    """Add middleware for SSE header injection."""
    app.add_middleware(SSEHeadersMiddleware)


def _include_routers(app: FastAPI) -> None:
    """Include all API routers in the application."""
    from api.routers import generations_router, health_router, internal_generations_router

    # Health router (no prefix - /health at root)
    app.include_router(health_router)

    # Generations router (/api/generations/*)
    app.include_router(generations_router)

    # Worker hand-off (/internal/generations/*)
    app.include_router(internal_generations_router)


def _register_shutdown(app: FastAPI, settings: Settings) -> None:
    """Register graceful shutdown handler."""

    @app.on_event("shutdown")
    async def shutdown_event():
        count = get_sse_connection_count()
        if count > 0:
            logger.info(
                "Shutting down with %d active SSE connections, "
                "waiting up to 5s for drain...",
                count,
            )
            for _ in range(10):
                if get_sse_connection_count() == 0:
                    break
                await asyncio.sleep(0.5)
        remaining = get_sse_connection_count()
        if remaining > 0:
            logger.warning(
                "Shutdown proceeding with %d SSE connections still active",
                remaining,
            )

        await _drain_pending_generations()

        shutdown_observability()

        logger.info("generation-api shutdown complete")

    # Handle SIGTERM for Render graceful shutdown
    def _handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, initiating graceful shutdown")
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _handle_sigterm)


async def _drain_pending_generations() -> None:
    """Give detached generations a bounded window to reach a terminal state.

    Whatever is still running afterwards stays active in the ledger and is
    treated as abandoned once the retention window passes.
    """
    from api.deps import peek_generation_components

    components = peek_generation_components()
    if components is None or components.orchestrator.pending_tasks == 0:
        return
    logger.info(
        "Waiting up to %.0fs for %d running generations",
        _PENDING_WORK_GRACE_SECONDS,
        components.orchestrator.pending_tasks,
    )
    try:
        await asyncio.wait_for(
            components.orchestrator.wait_for_pending(), timeout=_PENDING_WORK_GRACE_SECONDS
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Shutdown proceeding with %d generations still running",
            components.orchestrator.pending_tasks,
        )


# Default app instance for uvicorn
# This allows: uvicorn backend.main:app --reload
app = create_app()
