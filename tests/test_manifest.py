"""Tests for channel manifest parsing."""

import pytest

from rustmirror.toolchain.manifest import (
    ManifestError,
    manifest_path,
    parse_channel_manifest,
    parse_release_version,
    url_to_relative_path,
)

from helpers import UPSTREAM, channel_manifest, sha256_hex

LINUX = "x86_64-unknown-linux-gnu"
MAC = "aarch64-apple-darwin"
HASH_A = "AA" * 32
HASH_B = "bb" * 32
HASH_C = "cc" * 32
HASH_D = "dd" * 32
HASH_E = "ee" * 32

FULL_MANIFEST = f"""
manifest-version = "2"
date = "2024-06-13"

[pkg.rustc.target.{LINUX}]
available = true
url = "{UPSTREAM}/dist/2024-06-13/rustc-1.79.0-{LINUX}.tar.gz"
hash = "{HASH_A}"
xz_url = "{UPSTREAM}/dist/2024-06-13/rustc-1.79.0-{LINUX}.tar.xz"
xz_hash = "{HASH_B}"

[pkg.rustc.target.{MAC}]
available = true
url = "{UPSTREAM}/dist/2024-06-13/rustc-1.79.0-{MAC}.tar.gz"
hash = "{HASH_C}"

[pkg.rustc.target.i686-unknown-linux-gnu]
available = false

[pkg.rust-src.target."*"]
available = true
xz_url = "{UPSTREAM}/dist/2024-06-13/rust-src-1.79.0.tar.xz"
xz_hash = "{HASH_D}"

[pkg.rustc-dev.target.{LINUX}]
available = true
xz_url = "{UPSTREAM}/dist/2024-06-13/rustc-dev-1.79.0-{LINUX}.tar.xz"
xz_hash = "{HASH_E}"
"""


def paths(manifest):
    return [f.relative_path for f in manifest.files]


class TestManifestPath:
    """Tests for manifest_path."""

    def test_current_and_dated(self):
        """Should place current manifests in dist/ and dated copies below the date."""
        assert manifest_path("stable") == "dist/channel-rust-stable.toml"
        assert manifest_path("1.70.0", "2023-06-01") == "dist/2023-06-01/channel-rust-1.70.0.toml"


class TestUrlToRelativePath:
    """Tests for url_to_relative_path."""

    def test_strips_host(self):
        """Should keep only the URL path."""
        assert url_to_relative_path(f"{UPSTREAM}/dist/2024-01-01/x.tar.xz") == "dist/2024-01-01/x.tar.xz"

    @pytest.mark.parametrize("url", [f"{UPSTREAM}/", f"{UPSTREAM}/dist/../etc/passwd", f"{UPSTREAM}/dist//x"])
    def test_rejects_unsafe_paths(self, url):
        """Empty or traversing paths should be rejected."""
        with pytest.raises(ManifestError):
            url_to_relative_path(url)


class TestParseChannelManifest:
    """Tests for parse_channel_manifest."""

    def test_filters_platforms_and_dev(self):
        """Only wanted targets, the '*' target and available entries are kept."""
        manifest = parse_channel_manifest(FULL_MANIFEST, "stable", UPSTREAM, [LINUX])

        assert manifest.date == "2024-06-13"
        assert manifest.channel == "stable"
        assert paths(manifest) == [
            "dist/2024-06-13/rust-src-1.79.0.tar.xz",
            f"dist/2024-06-13/rustc-1.79.0-{LINUX}.tar.gz",
            f"dist/2024-06-13/rustc-1.79.0-{LINUX}.tar.xz",
        ]

    def test_checksums_lowercased(self):
        """Hashes should be normalized to lowercase hex."""
        manifest = parse_channel_manifest(FULL_MANIFEST, "stable", UPSTREAM, [LINUX])
        gz = next(f for f in manifest.files if f.relative_path.endswith(".tar.gz"))
        assert gz.checksum == "aa" * 32

    def test_download_dev(self):
        """rustc-dev should be included when requested."""
        manifest = parse_channel_manifest(
            FULL_MANIFEST, "stable", UPSTREAM, [LINUX], download_dev=True
        )
        assert f"dist/2024-06-13/rustc-dev-1.79.0-{LINUX}.tar.xz" in paths(manifest)

    def test_xz_only(self):
        """Disabling gz should keep only xz archives."""
        manifest = parse_channel_manifest(
            FULL_MANIFEST, "stable", UPSTREAM, [LINUX, MAC], download_gz=False
        )
        assert all(p.endswith(".tar.xz") for p in paths(manifest))
        # the mac target only ships gz in this manifest
        assert not any(MAC in p for p in paths(manifest))

    def test_urls_rebased_on_source(self):
        """Files should be fetched from the configured source."""
        manifest = parse_channel_manifest(
            FULL_MANIFEST, "stable", "https://other.test", [LINUX]
        )
        assert manifest.files[0].url == (
            "https://other.test/dist/2024-06-13/rust-src-1.79.0.tar.xz"
        )

    def test_helper_manifest(self):
        """Manifests rendered by the test helper should parse."""
        text = channel_manifest("2024-01-02", {"cargo": {LINUX: b"cargo"}})
        manifest = parse_channel_manifest(text, "nightly", UPSTREAM, [LINUX])
        assert [f.checksum for f in manifest.files] == [sha256_hex(b"cargo")]

    def test_missing_date(self):
        """A manifest without a date is malformed."""
        with pytest.raises(ManifestError, match="no date"):
            parse_channel_manifest('manifest-version = "2"\n', "stable", UPSTREAM, [LINUX])

    def test_invalid_toml(self):
        """Unparseable TOML should raise ManifestError."""
        with pytest.raises(ManifestError) as exc_info:
            parse_channel_manifest("date = ", "stable", UPSTREAM, [LINUX])
        assert exc_info.value.code == "bad_manifest"

    def test_missing_hash(self):
        """A URL without its hash should be rejected."""
        text = (
            'date = "2024-01-01"\n'
            f"[pkg.rustc.target.{LINUX}]\n"
            "available = true\n"
            f'xz_url = "{UPSTREAM}/dist/2024-01-01/rustc.tar.xz"\n'
        )
        with pytest.raises(ManifestError, match="Missing xz_hash"):
            parse_channel_manifest(text, "stable", UPSTREAM, [LINUX])


class TestParseReleaseVersion:
    """Tests for parse_release_version."""

    def test_version(self):
        """Should return the rustup version."""
        assert parse_release_version('schema-version = "1"\nversion = "1.27.1"\n') == "1.27.1"

    def test_missing_version(self):
        """A release file without a version is malformed."""
        with pytest.raises(ManifestError):
            parse_release_version('schema-version = "1"\n')
