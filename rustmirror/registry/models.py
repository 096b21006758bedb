"""SyncState ORM model.

Stores the registry index revision the mirror last committed, which makes the
next index sync incremental. A missing row (or one recorded for a different
upstream) means the index is cloned again from scratch.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from rustmirror.db import Base


class SyncState(Base):
    """ORM model for the index cursor of a registry.

    Attributes:
        registry_name: Registry identifier (primary key, column ``registry``).
        source: Upstream index URL the cursor belongs to.
        branch: Upstream branch the cursor belongs to.
        cursor: Last committed upstream commit id.
        updated_at: When the cursor was last moved.
    """

    __tablename__ = "sync_state"

    registry_name: Mapped[str] = mapped_column("registry", String(64), primary_key=True)
    source: Mapped[str] = mapped_column(String(512), nullable=False)
    branch: Mapped[str] = mapped_column(String(128), nullable=False)
    cursor: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        """Return string representation of SyncState."""
        return f"<SyncState(registry='{self.registry_name}', cursor='{self.cursor}')>"


__all__ = ["SyncState"]
