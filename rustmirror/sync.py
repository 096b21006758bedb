"""Sync orchestration.

run_sync() drives one complete pass over a mirror:

1. rustup-init installers and channel manifests/components (ToolchainSyncer)
2. the registry index, committed before anything reads it (IndexSyncer)
3. crate archives, optionally narrowed to a vendored project (ArchiveSyncer)
4. pruning of the roots whose syncer established a complete reference set

Each pass holds an exclusive lock on the mirror and is recorded as a SyncRun.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from sqlalchemy.orm import Session, sessionmaker

from rustmirror.config import ConfigError, Settings
from rustmirror.db import get_session, open_session_factory
from rustmirror.fetch.fetcher import Fetcher, RetryPolicy
from rustmirror.fetch.progress import ProgressCounter
from rustmirror.models import SyncRun
from rustmirror.prune import prune
from rustmirror.registry.archives import CRATES_DIR, ArchiveSyncer, ScopeManifest
from rustmirror.registry.index import IndexSyncError, IndexSyncer
from rustmirror.registry.scope import ScopeParseError, resolve_scope
from rustmirror.toolchain.service import ToolchainSyncer, channel_specs_from_settings
from rustmirror.types import PruneReport, SyncReport, SyncStatus

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".sync.lock"


class SyncLockedError(Exception):
    """Raised when another sync already holds the mirror lock."""

    def __init__(self, mirror_path: Path, code: str = "sync_locked") -> None:
        """Initialize SyncLockedError.

        Args:
            mirror_path: Root directory of the mirror.
            code: Error code for structured error handling.
        """
        super().__init__(f"Another sync is running on {mirror_path}")
        self.mirror_path = mirror_path
        self.code = code


@contextmanager
def sync_lock(mirror_path: Path) -> Iterator[None]:
    """Hold an exclusive, non-blocking lock on a mirror for one sync pass.

    Raises:
        SyncLockedError: If the lock is already held.
    """
    fd = os.open(str(mirror_path / LOCK_FILENAME), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise SyncLockedError(mirror_path) from e
        logger.debug("Lock acquired for %s", mirror_path)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@dataclass
class SyncOutcome:
    """Everything a sync pass produced."""

    reports: list[SyncReport] = field(default_factory=list)
    prune: PruneReport | None = None
    status: SyncStatus = SyncStatus.RUNNING
    run_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable summary."""
        return {
            "status": self.status.value,
            "reports": [r.to_dict() for r in self.reports],
            "prune": self.prune.to_dict() if self.prune else None,
        }


def build_client(settings: Settings) -> httpx.Client:
    """HTTP client for upstream requests (honors the *_proxy variables)."""
    return httpx.Client(
        headers={"User-Agent": settings.user_agent},
        follow_redirects=True,
        timeout=settings.download_timeout,
    )


def build_fetcher(
    settings: Settings,
    client: httpx.Client,
    shutdown: threading.Event,
    progress: ProgressCounter | None = None,
    sleep: Callable[[float], object] | None = None,
) -> Fetcher:
    """Create the fetcher shared by every syncer of a pass."""
    policy = RetryPolicy(
        max_attempts=settings.retries + 1,
        backoff_base=settings.backoff_base,
        backoff_max=settings.backoff_max,
    )
    return Fetcher(
        client,
        policy=policy,
        progress=progress,
        max_in_flight=settings.concurrency,
        shutdown=shutdown,
        sleep=sleep,
        verify_existing=settings.verify_existing,
        timeout=settings.download_timeout,
    )


def _status(reports: list[SyncReport], shutdown: threading.Event) -> SyncStatus:
    if shutdown.is_set() or any(r.cancelled for r in reports):
        return SyncStatus.CANCELLED
    if all(r.ok for r in reports):
        return SyncStatus.SUCCEEDED
    return SyncStatus.FAILED


def run_sync(
    settings: Settings,
    scope_dir: Path | None = None,
    prune_files: bool | None = None,
    dry_run_prune: bool = False,
    shutdown: threading.Event | None = None,
    client: httpx.Client | None = None,
    progress: ProgressCounter | None = None,
    session_factory: sessionmaker[Session] | None = None,
    sleep: Callable[[float], object] | None = None,
    now: Callable[[], datetime] | None = None,
) -> SyncOutcome:
    """Run one sync pass over a mirror.

    Args:
        settings: Settings bound to the mirror.
        scope_dir: Optional ``cargo vendor`` directory restricting crate archives.
        prune_files: Prune after syncing (defaults to settings.prune).
        dry_run_prune: Report what pruning would delete without deleting.
        shutdown: Shutdown signal (set by the CLI on SIGINT/SIGTERM).
        client: HTTP client; one is created (and closed) if not given.
        progress: Shared progress counter.
        session_factory: Session factory; opened from settings.db_url if not given.
        sleep: Retry backoff sleep function.
        now: Clock used for retention decisions.

    Returns:
        SyncOutcome with one report per syncer and the prune report.

    Raises:
        ConfigError: If the mirror directory does not exist.
        SyncLockedError: If another sync is running on the mirror.
    """
    mirror_root = settings.mirror_path
    if not mirror_root.is_dir():
        raise ConfigError(f"Mirror directory {mirror_root} does not exist (run init first)")
    shutdown = shutdown or threading.Event()
    if prune_files is None:
        prune_files = settings.prune

    with sync_lock(mirror_root):
        session_factory = session_factory or open_session_factory(settings.db_url)
        with get_session(session_factory) as session:
            run = SyncRun(scoped=scope_dir is not None)
            session.add(run)
            session.flush()
            run_id = run.id

        owns_client = client is None
        http = client or build_client(settings)
        try:
            fetcher = build_fetcher(settings, http, shutdown, progress, sleep)
            outcome = _run_syncers(settings, fetcher, session_factory, scope_dir, shutdown, now)
        finally:
            if owns_client:
                http.close()

        outcome.run_id = run_id
        outcome.status = _status(outcome.reports, shutdown)
        prune_roots = outcome.prune_roots if outcome.status is not SyncStatus.CANCELLED else []
        if not prune_files:
            outcome.prune = PruneReport(skipped="pruning disabled")
        elif not prune_roots:
            outcome.prune = PruneReport(skipped="no syncer produced a complete reference set")
        else:
            references = frozenset().union(*(r.referenced for r in outcome.prunable))
            outcome.prune = prune(references, mirror_root, prune_roots, dry_run=dry_run_prune)

        with get_session(session_factory) as session:
            run = session.get(SyncRun, run_id)
            if run is not None:
                run.finish(outcome.status, outcome.to_dict())

    logger.info("Sync finished: %s", outcome.status.value)
    return outcome


@dataclass
class _PassOutcome(SyncOutcome):
    prune_roots: list[str] = field(default_factory=list)
    prunable: list[SyncReport] = field(default_factory=list)

    def add(self, report: SyncReport, root: str | None) -> None:
        """Record a report; its root is pruned only if the report is not fatal."""
        self.reports.append(report)
        if root is not None and not report.fatal:
            self.prune_roots.append(root)
            self.prunable.append(report)


def _run_syncers(
    settings: Settings,
    fetcher: Fetcher,
    session_factory: sessionmaker[Session],
    scope_dir: Path | None,
    shutdown: threading.Event,
    now: Callable[[], datetime] | None,
) -> _PassOutcome:
    outcome = _PassOutcome()

    if settings.rustup_enabled:
        toolchain = ToolchainSyncer(
            settings, fetcher, session_factory, now=now or (lambda: datetime.now(timezone.utc))
        )
        outcome.add(toolchain.sync_rustup_init(), "rustup")
        outcome.add(toolchain.sync_channels(channel_specs_from_settings(settings)), "dist")

    if settings.crates_enabled:
        if shutdown.is_set():
            outcome.add(SyncReport(name="crates", cancelled=True), None)
            return outcome
        outcome.add(*_sync_registry(settings, fetcher, session_factory, scope_dir))

    return outcome


def _sync_registry(
    settings: Settings,
    fetcher: Fetcher,
    session_factory: sessionmaker[Session],
    scope_dir: Path | None,
) -> tuple[SyncReport, str | None]:
    scope: ScopeManifest | None = None
    if scope_dir is not None:
        try:
            scope = resolve_scope(scope_dir)
        except ScopeParseError as e:
            logger.error("Invalid scope: %s", e)
            return SyncReport(name="crates", aborted=f"invalid scope: {e}"), None
        logger.info("Scope: %d packages from %s", len(scope), scope_dir)

    try:
        snapshot = IndexSyncer(settings, session_factory).sync()
    except IndexSyncError as e:
        logger.error("Index sync failed: %s", e)
        return SyncReport(name="crates", aborted=f"index sync failed: {e}"), None

    report = ArchiveSyncer(settings, fetcher).sync_archives(snapshot, scope)
    return report, CRATES_DIR


__all__ = [
    "SyncLockedError",
    "SyncOutcome",
    "build_client",
    "build_fetcher",
    "run_sync",
    "sync_lock",
]
