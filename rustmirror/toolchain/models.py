"""ChannelRelease ORM model.

One row per mirrored dated release of a channel, listing every file the
release needs. Retention works on these rows; files of releases that fall out
of the window are left out of the reference set and removed by the pruner.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from rustmirror.db import Base


class ChannelRelease(Base):
    """ORM model for a mirrored channel release.

    Attributes:
        id: Primary key.
        channel: Channel name (stable, beta, nightly or a pinned version).
        date: Release date from the manifest (YYYY-MM-DD).
        manifest_sha256: SHA-256 of the channel manifest.
        files: Relative paths of every file of the release, manifests included.
        mirrored_at: When the release was (last) committed.
    """

    __tablename__ = "channel_releases"
    __table_args__ = (UniqueConstraint("channel", "date", name="uq_channel_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    manifest_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    files: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    mirrored_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        """Return string representation of ChannelRelease."""
        return f"<ChannelRelease(channel='{self.channel}', date='{self.date}')>"


__all__ = ["ChannelRelease"]
