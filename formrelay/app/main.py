"""
FormRelay - Integration dispatch service

FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from formrelay import __version__
from formrelay.app.api import integrations_router
from formrelay.app.dependencies import get_manager, get_settings, initialize_services, shutdown_services

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting FormRelay services...")
    try:
        await initialize_services()
        logger.info("FormRelay services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise

    yield

    # Shutdown
    logger.info("Shutting down FormRelay services...")
    try:
        await shutdown_services()
        logger.info("FormRelay services shut down successfully")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)


app = FastAPI(
    title="FormRelay",
    description="Deliver form lifecycle events to webhooks, spreadsheets, databases and email",
    version=__version__,
    lifespan=lifespan,
    debug=settings.debug,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(integrations_router, prefix="/api/v1")


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": settings.service_name,
        "version": __version__,
        "status": "running",
    }


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, Any]:
    """
    Health check endpoint.

    Returns the registered providers, the number of stored configs and
    the number of background dispatches still in flight.
    """
    manager = get_manager()
    return {
        "status": "healthy",
        "environment": settings.environment,
        "providers": manager.registry.destination_types(),
        "integrations": len(manager.store),
        "pending_dispatches": manager.pending,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "formrelay.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
