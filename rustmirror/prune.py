"""Removal of mirror files that no current snapshot references.

Pruning is a set difference: every file under the managed roots whose
relative path is not in the reference set is deleted. The reference set is
computed once per sync pass and passed in, so nothing referenced at the
start of a prune can be deleted by it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from rustmirror.types import FailedItem, PruneReport

logger = logging.getLogger(__name__)

# Directories whose content the mirror owns
MANAGED_ROOTS = ("dist", "rustup", "crates")


def _remove_empty_dirs(root: Path, dry_run: bool) -> None:
    """Remove directories left empty below root (root itself is kept)."""
    if dry_run:
        return
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        path = Path(dirpath)
        if path == root:
            continue
        try:
            path.rmdir()
        except OSError:
            # Not empty, or removed concurrently
            continue


def prune(
    reference_set: frozenset[str],
    mirror_root: Path,
    roots: Iterable[str] = MANAGED_ROOTS,
    dry_run: bool = False,
) -> PruneReport:
    """Delete files under the managed roots that are not referenced.

    Args:
        reference_set: Relative posix paths that must be kept.
        mirror_root: Root directory of the mirror.
        roots: Top-level directories to walk.
        dry_run: Report what would be deleted without deleting.

    Returns:
        PruneReport listing deleted (or deletable) paths and errors.
    """
    report = PruneReport(dry_run=dry_run)

    for root_name in roots:
        root = mirror_root / root_name
        if not root.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                relative = path.relative_to(mirror_root).as_posix()
                report.scanned += 1
                if relative in reference_set:
                    continue
                if dry_run:
                    logger.info("Would delete %s", relative)
                    report.deleted.append(relative)
                    continue
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.error("Could not delete %s: %s", relative, e)
                    report.errors.append(FailedItem(identifier=relative, reason=str(e)))
                    continue
                logger.debug("Deleted %s", relative)
                report.deleted.append(relative)
        _remove_empty_dirs(root, dry_run)

    logger.info(
        "%s %d of %d files",
        "Would prune" if dry_run else "Pruned",
        len(report.deleted),
        report.scanned,
    )
    return report


__all__ = ["MANAGED_ROOTS", "prune"]
