"""Channel manifest parsing.

A channel manifest (``channel-rust-<channel>.toml``) lists every component of
one dated release with per-target download URLs and SHA-256 hashes::

    date = "2024-06-13"

    [pkg.rustc.target.x86_64-unknown-linux-gnu]
    available = true
    url = "https://static.rust-lang.org/dist/2024-06-13/rustc-1.79.0-x86_64-unknown-linux-gnu.tar.gz"
    hash = "..."
    xz_url = "..."
    xz_hash = "..."
"""

from __future__ import annotations

import tomllib
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from rustmirror.toolchain.platforms import ANY_TARGET
from rustmirror.types import MirrorFile

# Component that is only needed to build rustc itself
DEV_COMPONENT = "rustc-dev"


class ToolchainSyncError(Exception):
    """Base error for toolchain sync failures."""

    def __init__(self, message: str, code: str = "toolchain_error") -> None:
        """Initialize ToolchainSyncError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class ManifestError(ToolchainSyncError):
    """A channel or release manifest could not be parsed."""

    def __init__(self, message: str, code: str = "bad_manifest") -> None:
        super().__init__(message, code)


@dataclass(frozen=True)
class ChannelManifest:
    """Files published by one dated release of a channel."""

    channel: str
    date: str
    files: tuple[MirrorFile, ...]


def manifest_path(channel: str, date: str | None = None) -> str:
    """Relative path of a channel manifest, optionally the dated copy."""
    if date is None:
        return f"dist/channel-rust-{channel}.toml"
    return f"dist/{date}/channel-rust-{channel}.toml"


def url_to_relative_path(url: str) -> str:
    """Strip scheme and host from a distribution URL.

    Raises:
        ManifestError: If the path escapes the mirror root.
    """
    path = urlsplit(url).path.lstrip("/")
    parts = path.split("/")
    if not path or any(part in ("", ".", "..") for part in parts):
        raise ManifestError(f"Unusable download URL in manifest: {url!r}")
    return path


def _load_toml(text: str, what: str) -> dict[str, Any]:
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ManifestError(f"Invalid TOML in {what}: {e}") from e


def _target_files(
    target: dict[str, Any], source: str, download_gz: bool, download_xz: bool
) -> list[MirrorFile]:
    pairs = []
    if download_gz:
        pairs.append(("url", "hash"))
    if download_xz:
        pairs.append(("xz_url", "xz_hash"))

    files = []
    for url_key, hash_key in pairs:
        url = target.get(url_key)
        if not url:
            continue
        checksum = target.get(hash_key)
        if not isinstance(checksum, str) or not checksum:
            raise ManifestError(f"Missing {hash_key} for {url}")
        relative_path = url_to_relative_path(url)
        files.append(
            MirrorFile(
                relative_path=relative_path,
                url=f"{source}/{relative_path}",
                checksum=checksum.lower(),
            )
        )
    return files


def parse_channel_manifest(
    text: str,
    channel: str,
    source: str,
    platforms: Collection[str],
    download_dev: bool = False,
    download_gz: bool = True,
    download_xz: bool = True,
) -> ChannelManifest:
    """Parse a channel manifest into the files to mirror.

    Components are downloaded from ``source`` at the same path they have on
    the upstream host, so the local layout mirrors the upstream one.

    Args:
        text: Manifest TOML.
        channel: Channel name (stable, beta, nightly or a version).
        source: Base URL of the distribution server.
        platforms: Target platforms to include; the ``*`` target is always included.
        download_dev: Include the rustc-dev component.
        download_gz: Include .tar.gz archives.
        download_xz: Include .tar.xz archives.

    Returns:
        ChannelManifest with files sorted by relative path.

    Raises:
        ManifestError: If the manifest is malformed.
    """
    data = _load_toml(text, f"channel-rust-{channel}.toml")
    date = data.get("date")
    if not isinstance(date, str) or not date:
        raise ManifestError(f"Manifest for {channel} has no date")

    packages = data.get("pkg", {})
    if not isinstance(packages, dict):
        raise ManifestError(f"Manifest for {channel} has a malformed pkg table")

    wanted = set(platforms)
    files: dict[str, MirrorFile] = {}
    for pkg_name, pkg in packages.items():
        if pkg_name == DEV_COMPONENT and not download_dev:
            continue
        for target_name, target in pkg.get("target", {}).items():
            if target_name != ANY_TARGET and target_name not in wanted:
                continue
            if not target.get("available", False):
                continue
            for mirror_file in _target_files(target, source, download_gz, download_xz):
                files.setdefault(mirror_file.relative_path, mirror_file)

    return ChannelManifest(
        channel=channel,
        date=date,
        files=tuple(files[path] for path in sorted(files)),
    )


def parse_release_version(text: str) -> str:
    """Return the rustup version from ``rustup/release-stable.toml``.

    Raises:
        ManifestError: If the file is malformed or has no version.
    """
    data = _load_toml(text, "release-stable.toml")
    version = data.get("version")
    if not isinstance(version, str) or not version or "/" in version:
        raise ManifestError("release-stable.toml has no usable version")
    return version


__all__ = [
    "ChannelManifest",
    "DEV_COMPONENT",
    "ManifestError",
    "ToolchainSyncError",
    "manifest_path",
    "parse_channel_manifest",
    "parse_release_version",
    "url_to_relative_path",
]
