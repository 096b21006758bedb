"""Crate archive download.

Every record of the index maps to one ``.crate`` file, stored as::

    crates/<prefix>/<name>/<version>/<name>-<version>.crate

where ``<prefix>`` is the index shard of the name (``1``, ``2``, ``3/a`` or
``ab/cd``), keeping any single directory small.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from rustmirror.fetch.fetcher import FetchCancelled, Fetcher
from rustmirror.fetch.pool import fetch_all
from rustmirror.registry.index import IndexRecord, IndexSnapshot
from rustmirror.types import FetchOutcome, MirrorFile, SyncReport

if TYPE_CHECKING:
    from rustmirror.config import Settings

logger = logging.getLogger(__name__)

# Root of archive storage under the mirror
CRATES_DIR = "crates"

ScopeManifest = frozenset[tuple[str, str]]


def crate_prefix(name: str) -> str:
    """Return the storage shard of a crate name (case preserved)."""
    if len(name) == 1:
        return "1"
    if len(name) == 2:
        return "2"
    if len(name) == 3:
        return f"3/{name[0]}"
    return f"{name[0:2]}/{name[2:4]}"


def crate_path(name: str, version: str) -> str:
    """Relative path of a crate archive under the mirror root."""
    return f"{CRATES_DIR}/{crate_prefix(name)}/{name}/{version}/{name}-{version}.crate"


def crate_url(template: str, name: str, version: str) -> str:
    """Expand a download URL template.

    Supports the markers cargo supports in a registry ``dl`` setting:
    ``{crate}``, ``{version}``, ``{prefix}`` and ``{lowerprefix}``.
    """
    prefix = crate_prefix(name)
    return (
        template.replace("{crate}", name)
        .replace("{version}", version)
        .replace("{lowerprefix}", prefix.lower())
        .replace("{prefix}", prefix)
    )


class ArchiveSyncer:
    """Downloads the archives referenced by an index snapshot."""

    def __init__(self, settings: Settings, fetcher: Fetcher) -> None:
        """Initialize ArchiveSyncer.

        Args:
            settings: Settings bound to the mirror.
            fetcher: Shared fetcher.
        """
        self.mirror_root = settings.mirror_path
        self.template = settings.crates_source
        self.workers = settings.concurrency
        self.fetcher = fetcher

    def select(
        self, snapshot: IndexSnapshot, scope: ScopeManifest | None = None
    ) -> tuple[list[IndexRecord], list[tuple[str, str]]]:
        """Pick the records in scope.

        Returns:
            Records to mirror, and scope pairs missing from the index.
        """
        if scope is None:
            return list(snapshot.records), []
        selected = [r for r in snapshot.records if r.key in scope]
        found = {r.key for r in selected}
        missing = sorted(scope - found)
        return selected, missing

    def mirror_file(self, record: IndexRecord) -> MirrorFile:
        return MirrorFile(
            relative_path=crate_path(record.name, record.version),
            url=crate_url(self.template, record.name, record.version),
            checksum=record.checksum,
        )

    def sync_archives(
        self, snapshot: IndexSnapshot, scope: ScopeManifest | None = None
    ) -> SyncReport:
        """Mirror the archives of every record in scope.

        Failures are collected, never raised; a scoped pair that is not in
        the index counts as a failure.

        Args:
            snapshot: Committed index snapshot.
            scope: Optional (name, version) pairs to restrict the sync to.

        Returns:
            SyncReport whose referenced set covers ``crates/``.
        """
        report = SyncReport(name="crates")
        records, missing = self.select(snapshot, scope)
        for name, version in missing:
            logger.error("%s@%s is not in the registry index", name, version)
            report.add_failure(f"{name}@{version}", "not in the registry index")

        files = [self.mirror_file(record) for record in records]
        by_path = {f.relative_path: record for f, record in zip(files, records, strict=True)}
        _warn_unverified(records)

        logger.info("Mirroring %d crate archives", len(files))
        for result in fetch_all(self.fetcher, self.mirror_root, files, self.workers):
            record = by_path[result.file.relative_path]
            if result.error is not None:
                if isinstance(result.error, FetchCancelled):
                    report.cancelled = True
                report.add_failure(f"{record.name}@{record.version}", str(result.error))
            elif result.result is not None and result.result.outcome is FetchOutcome.DOWNLOADED:
                report.downloaded += 1
            else:
                report.already_present += 1

        report.referenced = frozenset(by_path)
        return report


def _warn_unverified(records: Iterable[IndexRecord]) -> None:
    unverified = [r for r in records if r.checksum is None]
    if unverified:
        logger.warning(
            "%d index records have no checksum; their archives are mirrored unverified "
            "(first: %s@%s)",
            len(unverified),
            unverified[0].name,
            unverified[0].version,
        )


__all__ = [
    "ArchiveSyncer",
    "CRATES_DIR",
    "ScopeManifest",
    "crate_path",
    "crate_prefix",
    "crate_url",
]
