"""Database engine and session management for rustmirror.

Each mirror keeps its sync state in its own SQLite file (``mirror.db``).
The server reads it while a sync pass writes it, so SQLite connections run
in WAL mode with a busy timeout.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Milliseconds a connection waits for a competing writer
SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def _configure_sqlite(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def get_engine(db_url: str) -> Engine:
    """Create an engine for a mirror database.

    Args:
        db_url: Database URL, usually ``sqlite:///<mirror>/mirror.db``.

    Returns:
        SQLAlchemy Engine instance.
    """
    if not db_url.startswith("sqlite"):
        return create_engine(db_url)

    # Sessions are used from fetch worker threads and the server's threadpool
    engine = create_engine(db_url, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _configure_sqlite)
    return engine


@contextmanager
def get_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits on success and rolls back if the block raises.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """Create the tables of every model that are missing."""
    # Model modules register their tables on import
    from rustmirror import models as run_models  # noqa: F401
    from rustmirror.registry import models as registry_models  # noqa: F401
    from rustmirror.toolchain import models as toolchain_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_session_factory(db_url: str) -> sessionmaker[Session]:
    """Create tables if needed and return a session factory for a database.

    Args:
        db_url: Database URL.

    Returns:
        Session factory bound to a ready database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "open_session_factory",
]
