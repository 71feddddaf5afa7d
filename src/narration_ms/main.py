"""
FastAPI Application Entry Point.

Usage:
    uvicorn narration_ms.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from narration_ms.api.routes import router
from narration_ms.core.logging import configure_logging


async def shutdown_manager() -> None:
    """Stop playback and drop the Polly client on shutdown."""
    from narration_ms.services.narration_service import _manager

    if _manager is not None:
        await _manager.dispose()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await shutdown_manager()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

        1. Configures structured logging (NARRATION_MS_LOG_LEVEL, settings file)
        2. Creates a FastAPI instance
        3. Registers the narration router
        4. Disposes the manager on shutdown (lifespan)
    """
    configure_logging()

    app = FastAPI(title="narration-ms", lifespan=lifespan)
    app.include_router(router)

    return app


app = create_app()
