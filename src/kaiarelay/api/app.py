"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kaiarelay.config import get_settings
from kaiarelay.delegation.orchestrator import FeeDelegationOrchestrator
from kaiarelay.errors import ConfigurationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if app.state.orchestrator is None:
        try:
            app.state.orchestrator = FeeDelegationOrchestrator.from_settings()
        except ConfigurationError as e:
            logger.warning(f"Fee delegation disabled: {e}")
    yield
    # Shutdown
    logger.info("API shutting down")


def create_app(orchestrator: Optional[FeeDelegationOrchestrator] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests); built from settings at
            startup when omitted
    """
    settings = get_settings()

    app = FastAPI(
        title="Kaia Relay API",
        description="Fee-delegated transaction relay for Kaia",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.orchestrator = orchestrator

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from kaiarelay.api.routes import delegation, health

    app.include_router(health.router, tags=["Health"])
    app.include_router(delegation.router)

    return app
