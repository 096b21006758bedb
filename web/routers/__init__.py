"""Router modules for the mirror server."""

from web.routers import git, health, mirror

__all__ = ["git", "health", "mirror"]
