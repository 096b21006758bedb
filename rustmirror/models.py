"""SyncRun ORM model.

Each `sync` invocation leaves one row describing when it ran, how it ended
and the per-syncer summary, so the CLI and the index page can show the state
of the mirror without re-scanning it.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rustmirror.db import Base
from rustmirror.types import SyncStatus


class SyncRun(Base):
    """ORM model for one sync pass.

    Attributes:
        id: Primary key.
        started_at: When the pass started (UTC).
        finished_at: When the pass finished, None while running.
        status: running, succeeded, failed or cancelled.
        scoped: Whether a scope manifest narrowed the crate set.
        summary: JSON summary of syncer and prune reports.
    """

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncStatus.RUNNING.value
    )
    scoped: Mapped[bool] = mapped_column(nullable=False, default=False)
    summary: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        """Return string representation of SyncRun."""
        return f"<SyncRun(id={self.id}, status='{self.status}')>"

    def finish(self, status: SyncStatus, summary: dict[str, Any]) -> None:
        """Mark this run as finished."""
        self.status = status.value
        self.summary = summary
        self.finished_at = datetime.now(timezone.utc)


__all__ = ["SyncRun"]
