"""FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from ..config import Settings
from ..runtime import Runtime
from .middleware import AbuseGuardMiddleware
from .routes import errors, health, metrics, security

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Create the application around a runtime.

    Args:
        runtime: Runtime to serve (built from settings if None)
        settings: Settings for a new runtime

    Returns:
        Configured FastAPI app; its lifespan starts and stops the runtime
    """
    runtime = runtime or Runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        yield
        await runtime.stop()

    app = FastAPI(
        title="Bulwark",
        description="Resilience and observability core for the gamification dashboard",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(AbuseGuardMiddleware, runtime=runtime)

    app.include_router(health.router)
    app.include_router(errors.router)
    app.include_router(security.router)
    app.include_router(metrics.router)

    return app
