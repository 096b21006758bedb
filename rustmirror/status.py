"""Read-only views of mirror state.

Used by the `status` command and the served index page; nothing here
touches upstream or modifies the mirror.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from rustmirror.config import Settings
from rustmirror.db import get_session, open_session_factory
from rustmirror.models import SyncRun
from rustmirror.registry.index import REGISTRY_NAME
from rustmirror.registry.models import SyncState
from rustmirror.toolchain.models import ChannelRelease

RUSTUP_DIST_DIR = Path("rustup") / "dist"


@dataclass(frozen=True)
class InstallerLink:
    """A mirrored rustup-init binary."""

    platform: str
    filename: str

    @property
    def relative_path(self) -> str:
        return f"{RUSTUP_DIST_DIR.as_posix()}/{self.platform}/{self.filename}"


def list_installers(mirror_root: Path) -> list[InstallerLink]:
    """List the rustup-init binaries present under rustup/dist."""
    dist = mirror_root / RUSTUP_DIST_DIR
    if not dist.is_dir():
        return []
    links = []
    for platform_dir in sorted(dist.iterdir()):
        if not platform_dir.is_dir():
            continue
        for binary in sorted(platform_dir.iterdir()):
            if binary.is_file() and binary.name.startswith("rustup-init") and (
                not binary.name.endswith(".sha256")
            ):
                links.append(InstallerLink(platform=platform_dir.name, filename=binary.name))
    return links


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def mirror_status(
    settings: Settings,
    session_factory: sessionmaker[Session] | None = None,
    limit: int = 10,
) -> dict[str, Any]:
    """Summarize recent sync runs, mirrored releases and the index cursor.

    Args:
        settings: Settings bound to the mirror.
        session_factory: Session factory; opened from settings.db_url if not given.
        limit: Maximum number of sync runs to include.

    Returns:
        JSON-serializable dictionary with ``runs``, ``channels`` and ``index``.
    """
    if session_factory is None:
        session_factory = open_session_factory(settings.db_url)

    with get_session(session_factory) as session:
        runs = session.scalars(
            select(SyncRun).order_by(SyncRun.id.desc()).limit(limit)
        ).all()
        releases = session.scalars(
            select(ChannelRelease).order_by(
                ChannelRelease.channel, ChannelRelease.date.desc()
            )
        ).all()
        state = session.get(SyncState, REGISTRY_NAME)

        return {
            "runs": [
                {
                    "id": run.id,
                    "status": run.status,
                    "scoped": run.scoped,
                    "started_at": _iso(run.started_at),
                    "finished_at": _iso(run.finished_at),
                    "summary": run.summary,
                }
                for run in runs
            ],
            "channels": [
                {
                    "channel": release.channel,
                    "date": release.date,
                    "files": len(release.files),
                }
                for release in releases
            ],
            "index": (
                {
                    "source": state.source,
                    "branch": state.branch,
                    "cursor": state.cursor,
                    "updated_at": _iso(state.updated_at),
                }
                if state is not None
                else None
            ),
        }


__all__ = ["InstallerLink", "list_installers", "mirror_status"]
