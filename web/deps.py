"""Request dependencies for FastAPI.

Provides the mirror settings and the session factory to route handlers via
FastAPI dependency injection. Both live on ``app.state``, set up by
create_app() and its lifespan.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from rustmirror.config import Settings


def get_app_settings(request: Request) -> Settings:
    """Get the settings of the mirror being served.

    Args:
        request: FastAPI request object.

    Returns:
        Settings bound to the served mirror.
    """
    settings: Any = request.app.state.settings
    return settings  # type: ignore[no-any-return]


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]
