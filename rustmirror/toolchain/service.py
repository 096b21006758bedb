"""Toolchain sync service.

This module provides the high-level toolchain mirroring APIs:
- channel_specs_from_settings(): Channels to mirror and their retention
- ToolchainSyncer.sync_channels(): Mirror channel manifests and components
- ToolchainSyncer.sync_rustup_init(): Mirror rustup-init installers

A channel sync has three phases. Manifests of every channel are fetched
(verified against their ``.sha256`` sidecar) into the staging area first.
The components of all channels are then fetched in one bounded pool, shared
files only once. Finally each channel whose files all arrived is committed:
its release is recorded and its manifest is moved into ``dist/``, so clients
never see a manifest that points at missing files.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from rustmirror.db import get_session
from rustmirror.fetch.fetcher import (
    FetchCancelled,
    FetchError,
    Fetcher,
    NotFoundError,
    copy_file_atomic,
    write_file_atomic,
)
from rustmirror.fetch.pool import fetch_all, tally
from rustmirror.toolchain.manifest import (
    ChannelManifest,
    ManifestError,
    manifest_path,
    parse_channel_manifest,
    parse_release_version,
)
from rustmirror.toolchain.models import ChannelRelease
from rustmirror.toolchain.platforms import installer_name
from rustmirror.toolchain.retention import RetentionPolicy, retained_dates
from rustmirror.types import FetchOutcome, SyncReport

if TYPE_CHECKING:
    from rustmirror.config import Settings

logger = logging.getLogger(__name__)

# Directory (under the mirror root) manifests are staged in before commit
STAGING_DIR = ".staging"

ROLLING_CHANNELS = ("stable", "beta", "nightly")


@dataclass(frozen=True)
class ChannelSpec:
    """A channel to mirror and how many of its releases to keep."""

    name: str
    retention: RetentionPolicy
    pinned: bool = False


@dataclass(frozen=True)
class StagedChannel:
    """A channel whose manifest has been fetched and parsed."""

    spec: ChannelSpec
    manifest: ChannelManifest
    staged_path: Path
    checksum: str


def channel_specs_from_settings(settings: Settings) -> list[ChannelSpec]:
    """Build the channel list from settings.

    Rolling channels use their keep_latest_* setting and the shared age
    limit; pinned versions keep their single release.
    """
    keep = {
        "stable": settings.keep_latest_stables,
        "beta": settings.keep_latest_betas,
        "nightly": settings.keep_latest_nightlies,
    }
    specs = [
        ChannelSpec(
            name=name,
            retention=RetentionPolicy(
                keep_latest=keep[name], max_age_days=settings.retention_max_age_days
            ),
        )
        for name in ROLLING_CHANNELS
    ]
    for version in settings.pinned_rust_versions:
        specs.append(
            ChannelSpec(name=version, retention=RetentionPolicy(keep_latest=1), pinned=True)
        )
    return specs


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sidecar(checksum: str, filename: str) -> bytes:
    return f"{checksum}  {filename}\n".encode()


class ToolchainSyncer:
    """Mirrors rustup channels and installers into a mirror directory."""

    def __init__(
        self,
        settings: Settings,
        fetcher: Fetcher,
        session_factory: sessionmaker[Session],
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize ToolchainSyncer.

        Args:
            settings: Settings bound to the mirror.
            fetcher: Shared fetcher.
            session_factory: Session factory of the mirror database.
            now: Clock used for retention decisions.
        """
        self.mirror_root = settings.mirror_path
        self.source = settings.rustup_source
        self.workers = settings.concurrency
        self.download_dev = settings.download_dev
        self.download_gz = settings.download_gz
        self.download_xz = settings.download_xz
        self.unix_platforms = settings.unix_platforms
        self.windows_platforms = settings.windows_platforms
        self.fetcher = fetcher
        self.session_factory = session_factory
        self.now = now

    @property
    def platforms(self) -> list[str]:
        return self.unix_platforms + self.windows_platforms

    # Channels

    def sync_channels(self, channels: Sequence[ChannelSpec]) -> SyncReport:
        """Mirror the given channels.

        A failed manifest aborts the pass for pruning purposes (the retained
        set of that channel is unknown), but the other channels still sync.

        Args:
            channels: Channels to mirror.

        Returns:
            SyncReport whose referenced set covers ``dist/``.
        """
        report = SyncReport(name="toolchain")
        staged: list[StagedChannel] = []
        manifest_failures: list[str] = []

        for spec in channels:
            if spec.retention.disabled:
                logger.info("Skipping channel %s (keep_latest = 0)", spec.name)
                continue
            try:
                staged.append(self._stage_channel(spec))
            except FetchCancelled:
                report.cancelled = True
                break
            except NotFoundError as e:
                reason = (
                    f"pinned rust version {spec.name} could not be found"
                    if spec.pinned
                    else str(e)
                )
                logger.error("Channel %s: %s", spec.name, reason)
                report.add_failure(manifest_path(spec.name), reason)
                manifest_failures.append(spec.name)
            except (FetchError, ManifestError) as e:
                logger.error("Channel %s: %s", spec.name, e)
                report.add_failure(manifest_path(spec.name), str(e))
                manifest_failures.append(spec.name)

        failed_paths: set[str] = set()
        if staged and not report.cancelled:
            results = fetch_all(
                self.fetcher,
                self.mirror_root,
                (f for s in staged for f in s.manifest.files),
                self.workers,
            )
            tally(report, results)
            failed_paths = {r.file.relative_path for r in results if not r.ok}
            if any(isinstance(r.error, FetchCancelled) for r in results):
                report.cancelled = True

        if not report.cancelled:
            for channel in staged:
                missing = [f for f in channel.manifest.files if f.relative_path in failed_paths]
                if missing:
                    logger.warning(
                        "Not committing channel %s: %d of its files failed",
                        channel.spec.name,
                        len(missing),
                    )
                    continue
                try:
                    self._commit_channel(channel)
                except OSError as e:
                    logger.error("Could not commit channel %s: %s", channel.spec.name, e)
                    report.add_failure(manifest_path(channel.spec.name), str(e))

        if manifest_failures:
            report.aborted = "manifest unavailable for " + ", ".join(manifest_failures)

        report.referenced = self._reference_set(channels, staged, retire=not report.fatal)
        return report

    def _stage_channel(self, spec: ChannelSpec) -> StagedChannel:
        """Fetch and parse one channel manifest into the staging area."""
        url = f"{self.source}/{manifest_path(spec.name)}"
        checksum = self.fetcher.fetch_sha256(url)
        staged_path = self.mirror_root / STAGING_DIR / manifest_path(spec.name)
        self.fetcher.fetch(url, staged_path, checksum)
        try:
            text = staged_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestError(f"Cannot read staged manifest {staged_path}: {e}") from e

        manifest = parse_channel_manifest(
            text,
            channel=spec.name,
            source=self.source,
            platforms=self.platforms,
            download_dev=self.download_dev,
            download_gz=self.download_gz,
            download_xz=self.download_xz,
        )
        logger.info(
            "Channel %s: release %s, %d files", spec.name, manifest.date, len(manifest.files)
        )
        return StagedChannel(
            spec=spec, manifest=manifest, staged_path=staged_path, checksum=checksum
        )

    def _commit_channel(self, channel: StagedChannel) -> None:
        """Record the release and publish its manifest."""
        name = channel.spec.name
        date = channel.manifest.date
        manifest_name = f"channel-rust-{name}.toml"
        sidecar = _sidecar(channel.checksum, manifest_name)

        dated = manifest_path(name, date)
        copy_file_atomic(channel.staged_path, self.mirror_root / dated)
        write_file_atomic(self.mirror_root / f"{dated}.sha256", sidecar)

        files = sorted(
            {f.relative_path for f in channel.manifest.files} | {dated, f"{dated}.sha256"}
        )
        with get_session(self.session_factory) as session:
            release = session.scalar(
                select(ChannelRelease).where(
                    ChannelRelease.channel == name, ChannelRelease.date == date
                )
            )
            if release is None:
                session.add(
                    ChannelRelease(
                        channel=name,
                        date=date,
                        manifest_sha256=channel.checksum,
                        files=files,
                    )
                )
            elif release.manifest_sha256 != channel.checksum or release.files != files:
                release.manifest_sha256 = channel.checksum
                release.files = files
                release.mirrored_at = self.now()

        # The current manifest goes last so it only ever points at complete releases
        current = manifest_path(name)
        copy_file_atomic(channel.staged_path, self.mirror_root / current)
        write_file_atomic(self.mirror_root / f"{current}.sha256", sidecar)
        logger.info("Committed channel %s release %s", name, date)

    def _reference_set(
        self, channels: Iterable[ChannelSpec], staged: Iterable[StagedChannel], retire: bool
    ) -> frozenset[str]:
        """Paths under dist/ that must survive pruning.

        Args:
            channels: Configured channels.
            staged: Channels whose manifests were fetched this pass.
            retire: Delete release rows that fell out of the retention window.
        """
        referenced: set[str] = set()
        now = self.now()
        with get_session(self.session_factory) as session:
            for spec in channels:
                releases = session.scalars(
                    select(ChannelRelease).where(ChannelRelease.channel == spec.name)
                ).all()
                keep = set(retained_dates((r.date for r in releases), spec.retention, now))
                if not spec.retention.disabled:
                    current = manifest_path(spec.name)
                    referenced.update((current, f"{current}.sha256"))
                for release in releases:
                    if release.date in keep:
                        referenced.update(release.files)
                    elif retire:
                        logger.info("Retiring %s release %s", release.channel, release.date)
                        session.delete(release)

        # Files of a manifest that could not be committed yet are kept for the next run
        for channel in staged:
            referenced.update(f.relative_path for f in channel.manifest.files)
        return frozenset(referenced)

    # Installers

    def sync_rustup_init(self) -> SyncReport:
        """Mirror rustup-init for every configured platform.

        The installer is stored under ``rustup/archive/<version>/<platform>/``
        and copied to ``rustup/dist/<platform>/``, both with ``.sha256``
        sidecars. Platforms without an installer upstream (404) are skipped;
        a platform whose fetch fails keeps its previously mirrored files.

        Returns:
            SyncReport whose referenced set covers ``rustup/``.
        """
        report = SyncReport(name="rustup-init")
        release_url = f"{self.source}/rustup/release-stable.toml"
        try:
            release_text = self.fetcher.fetch_text(release_url)
            version = parse_release_version(release_text)
            write_file_atomic(
                self.mirror_root / "rustup" / "release-stable.toml",
                release_text.encode(),
            )
        except FetchCancelled:
            report.cancelled = True
            return report
        except (FetchError, ManifestError, OSError) as e:
            logger.error("Could not read rustup release: %s", e)
            report.aborted = f"rustup release unavailable: {e}"
            return report

        logger.info("rustup version %s", version)
        referenced = {"rustup/release-stable.toml"}
        targets = [(p, False) for p in self.unix_platforms] + [
            (p, True) for p in self.windows_platforms
        ]

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="rustup") as pool:
            futures = {
                pool.submit(self._sync_installer, platform, is_windows, version): platform
                for platform, is_windows in targets
            }
            for future in as_completed(futures):
                platform = futures[future]
                try:
                    outcome = future.result()
                except FetchCancelled:
                    report.cancelled = True
                    continue
                except (FetchError, OSError) as e:
                    logger.error("rustup-init for %s failed: %s", platform, e)
                    report.add_failure(f"rustup-init {platform}", str(e))
                    referenced.update(self._existing_installer_paths(platform))
                    continue
                if outcome is None:
                    continue
                paths, fetch_outcome = outcome
                referenced.update(paths)
                if fetch_outcome is FetchOutcome.DOWNLOADED:
                    report.downloaded += 1
                else:
                    report.already_present += 1

        report.referenced = frozenset(referenced)
        return report

    def _existing_installer_paths(self, platform: str) -> set[str]:
        """Installer files already mirrored for platform, in any version."""
        rustup = self.mirror_root / "rustup"
        directories = [rustup / "dist" / platform, *rustup.glob(f"archive/*/{platform}")]
        return {
            path.relative_to(self.mirror_root).as_posix()
            for directory in directories
            if directory.is_dir()
            for path in directory.iterdir()
            if path.is_file()
        }

    def _sync_installer(
        self, platform: str, is_windows: bool, version: str
    ) -> tuple[list[str], FetchOutcome] | None:
        """Fetch one installer; None when the platform has none upstream."""
        name = installer_name(is_windows)
        url = f"{self.source}/rustup/dist/{platform}/{name}"
        archive_rel = f"rustup/archive/{version}/{platform}/{name}"
        dist_rel = f"rustup/dist/{platform}/{name}"

        try:
            checksum = self.fetcher.fetch_sha256(url)
            result = self.fetcher.fetch(url, self.mirror_root / archive_rel, checksum)
        except NotFoundError:
            logger.debug("No rustup-init published for %s", platform)
            return None

        sidecar = _sidecar(checksum, name)
        write_file_atomic(self.mirror_root / f"{archive_rel}.sha256", sidecar)
        copy_file_atomic(self.mirror_root / archive_rel, self.mirror_root / dist_rel)
        write_file_atomic(self.mirror_root / f"{dist_rel}.sha256", sidecar)
        return (
            [archive_rel, f"{archive_rel}.sha256", dist_rel, f"{dist_rel}.sha256"],
            result.outcome,
        )


__all__ = [
    "ChannelSpec",
    "STAGING_DIR",
    "StagedChannel",
    "ToolchainSyncer",
    "channel_specs_from_settings",
]
