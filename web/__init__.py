"""FastAPI web application serving a rustmirror mirror.

All mirror state is read from disk and the sync database; nothing
served here modifies the mirror.
"""

from web.app import create_app

__all__ = ["create_app"]
