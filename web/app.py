"""FastAPI application factory.

This module creates the FastAPI application that serves one mirror
directory, with all routers and dependency injection configured.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rustmirror import __version__
from rustmirror.config import Settings
from rustmirror.db import open_session_factory
from web.routers import git, health, mirror


def create_app(settings: Settings) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings bound to the mirror to serve.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open the mirror's state database on startup."""
        app.state.session_factory = open_session_factory(settings.db_url)
        yield

    application = FastAPI(
        title="rustmirror",
        description="Offline mirror of rustup and crates.io",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.state.settings = settings

    application.include_router(health.router, tags=["health"])
    application.include_router(git.router, tags=["git"])
    application.include_router(mirror.router, tags=["mirror"])

    return application
