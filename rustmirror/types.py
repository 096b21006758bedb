"""Shared type definitions for rustmirror.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class FileState(str, Enum):
    """Local state of a mirrored file."""

    ABSENT = "absent"
    PARTIAL = "partial"
    VERIFIED = "verified"


class FetchOutcome(str, Enum):
    """How a successful fetch was satisfied."""

    DOWNLOADED = "downloaded"
    ALREADY_PRESENT = "already_present"


class SyncStatus(str, Enum):
    """Status of a sync run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class MirrorFile:
    """The unit of replication: one remote file and where it lives locally."""

    relative_path: str
    url: str
    checksum: str | None = None
    state: FileState = FileState.ABSENT


@dataclass(frozen=True)
class FailedItem:
    """A file or package that could not be mirrored."""

    identifier: str
    reason: str


@dataclass
class SyncReport:
    """Aggregated outcome of one syncer's pass.

    Attributes:
        name: Syncer name shown in summaries.
        downloaded: Files fetched from upstream during the pass.
        already_present: Files that were already on disk and valid.
        failed: Items that ultimately failed after retries.
        aborted: Reason the whole pass was aborted, if it was.
        cancelled: Whether the shutdown signal stopped the pass early.
        referenced: Relative paths the pass considers current (for pruning).
    """

    name: str
    downloaded: int = 0
    already_present: int = 0
    failed: list[FailedItem] = field(default_factory=list)
    aborted: str | None = None
    cancelled: bool = False
    referenced: frozenset[str] = frozenset()

    @property
    def ok(self) -> bool:
        """True when nothing failed and the pass ran to completion."""
        return not self.failed and self.aborted is None and not self.cancelled

    @property
    def fatal(self) -> bool:
        """True when the pass could not establish its reference set."""
        return self.aborted is not None or self.cancelled

    def add_failure(self, identifier: str, reason: str) -> None:
        """Record a failed item."""
        self.failed.append(FailedItem(identifier=identifier, reason=reason))

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-serializable summary."""
        return {
            "name": self.name,
            "downloaded": self.downloaded,
            "already_present": self.already_present,
            "failed": [
                {"identifier": f.identifier, "reason": f.reason} for f in self.failed
            ],
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "referenced": len(self.referenced),
        }


@dataclass
class PruneReport:
    """Outcome of a prune pass."""

    scanned: int = 0
    deleted: list[str] = field(default_factory=list)
    errors: list[FailedItem] = field(default_factory=list)
    dry_run: bool = False
    skipped: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-serializable summary."""
        return {
            "scanned": self.scanned,
            "deleted": len(self.deleted),
            "errors": [
                {"identifier": e.identifier, "reason": e.reason} for e in self.errors
            ],
            "dry_run": self.dry_run,
            "skipped": self.skipped,
        }


__all__ = [
    "FailedItem",
    "FetchOutcome",
    "FileState",
    "MirrorFile",
    "PruneReport",
    "SyncReport",
    "SyncStatus",
]
