"""Fetch many mirror files through one bounded worker pool."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from pathlib import Path

from rustmirror.fetch.fetcher import FetchError, Fetcher, FetchResult, FilesystemError
from rustmirror.types import FetchOutcome, FileState, MirrorFile, SyncReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolResult:
    """Outcome of one file in a pool run; exactly one of result/error is set."""

    file: MirrorFile
    result: FetchResult | None = None
    error: FetchError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def dedupe_files(files: Iterable[MirrorFile]) -> list[MirrorFile]:
    """Drop repeated relative paths, keeping the first occurrence."""
    seen: dict[str, MirrorFile] = {}
    for mirror_file in files:
        previous = seen.get(mirror_file.relative_path)
        if previous is None:
            seen[mirror_file.relative_path] = mirror_file
        elif previous.checksum != mirror_file.checksum:
            logger.warning(
                "Conflicting checksums for %s, keeping the first one",
                mirror_file.relative_path,
            )
    return list(seen.values())


def _fetch_one(fetcher: Fetcher, mirror_root: Path, mirror_file: MirrorFile) -> PoolResult:
    dest = mirror_root / mirror_file.relative_path
    try:
        result = fetcher.fetch(mirror_file.url, dest, mirror_file.checksum)
    except FetchError as e:
        state = FileState.PARTIAL if dest.exists() else FileState.ABSENT
        return PoolResult(file=replace(mirror_file, state=state), error=e)
    except OSError as e:
        error = FilesystemError(f"Cannot write {dest}: {e}", mirror_file.url)
        return PoolResult(file=replace(mirror_file, state=FileState.ABSENT), error=error)
    state = FileState.VERIFIED if result.verified else FileState.PARTIAL
    return PoolResult(file=replace(mirror_file, state=state), result=result)


def fetch_all(
    fetcher: Fetcher,
    mirror_root: Path,
    files: Iterable[MirrorFile],
    workers: int,
) -> list[PoolResult]:
    """Fetch every file with at most `workers` threads.

    Files sharing a relative path are fetched once. Results are gathered on
    the calling thread, in completion order.

    Args:
        fetcher: Shared fetcher (also bounds in-flight requests).
        mirror_root: Root directory the relative paths are resolved against.
        files: Files to mirror.
        workers: Pool size.

    Returns:
        One PoolResult per unique file.
    """
    unique = dedupe_files(files)
    if not unique:
        return []

    results: list[PoolResult] = []
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
        futures = [
            pool.submit(_fetch_one, fetcher, mirror_root, mirror_file)
            for mirror_file in unique
        ]
        for future in as_completed(futures):
            results.append(future.result())
    return results


def tally(report: SyncReport, results: Iterable[PoolResult]) -> None:
    """Fold pool results into a syncer report."""
    for item in results:
        if item.error is not None:
            report.add_failure(item.file.relative_path, str(item.error))
        elif item.result is not None and item.result.outcome is FetchOutcome.DOWNLOADED:
            report.downloaded += 1
        else:
            report.already_present += 1


__all__ = ["PoolResult", "dedupe_files", "fetch_all", "tally"]
