"""Tests for the fetch module.

These tests use mocked HTTP responses to test retries, checksum
verification, atomic commit and the already-present shortcut.
"""

import threading
from pathlib import Path

import httpx
import pytest
import respx

from rustmirror.fetch import (
    ChecksumMismatch,
    FetchCancelled,
    FetchError,
    Fetcher,
    NotFoundError,
    ProgressCounter,
    RetryPolicy,
    TransientNetworkError,
    compute_file_sha256,
    parse_sha256_sidecar,
)
from rustmirror.fetch.fetcher import PART_SUFFIX, copy_file_atomic, write_file_atomic
from rustmirror.types import FetchOutcome

from helpers import UPSTREAM, sha256_hex

URL = f"{UPSTREAM}/dist/file.tar.xz"
CONTENT = b"toolchain component payload"


def leftover_parts(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.endswith(PART_SUFFIX)]


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_delay_capped(self):
        """Delays should grow by the factor and stop at backoff_max."""
        policy = RetryPolicy(backoff_base=1.0, backoff_factor=2.0, backoff_max=5.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_rejects_zero_attempts(self):
        """max_attempts below 1 should be rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_retryable_errors(self):
        """Transient errors and checksum mismatches are retryable, 404s are not."""
        policy = RetryPolicy()
        assert policy.is_retryable(TransientNetworkError("x", URL))
        assert policy.is_retryable(ChecksumMismatch(URL, "a", "b"))
        assert not policy.is_retryable(NotFoundError(URL, 404))


class TestParseSha256Sidecar:
    """Tests for parse_sha256_sidecar."""

    def test_digest_with_filename(self):
        """Should return the digest of '<hex>  <filename>'."""
        digest = "AB" * 32
        assert parse_sha256_sidecar(f"{digest}  file.tar.xz\n", URL) == digest.lower()

    def test_bare_digest(self):
        """Should accept a sidecar holding only the digest."""
        digest = "0f" * 32
        assert parse_sha256_sidecar(digest, URL) == digest

    @pytest.mark.parametrize("content", ["", "not-a-digest  file", "abc123  file"])
    def test_malformed(self, content):
        """Malformed sidecars should raise FetchError."""
        with pytest.raises(FetchError) as exc_info:
            parse_sha256_sidecar(content, URL)
        assert exc_info.value.code == "bad_sidecar"


class TestAtomicWrites:
    """Tests for write_file_atomic and copy_file_atomic."""

    def test_write_creates_parents(self, tmp_path):
        """Should create parent directories and write content."""
        dest = tmp_path / "a" / "b" / "file.toml"
        assert write_file_atomic(dest, b"data") is True
        assert dest.read_bytes() == b"data"
        assert leftover_parts(dest.parent) == []

    def test_identical_content_not_rewritten(self, tmp_path):
        """Writing identical bytes should be a no-op."""
        dest = tmp_path / "file.toml"
        write_file_atomic(dest, b"data")
        assert write_file_atomic(dest, b"data") is False

    def test_copy_skips_identical(self, tmp_path):
        """Copying over an identical file should be a no-op."""
        src = tmp_path / "src"
        src.write_bytes(b"binary")
        dest = tmp_path / "out" / "dest"
        assert copy_file_atomic(src, dest) is True
        assert copy_file_atomic(src, dest) is False
        assert dest.read_bytes() == b"binary"


class TestFetch:
    """Tests for Fetcher.fetch."""

    @respx.mock
    def test_download_verified(self, fetcher, tmp_path, progress):
        """Should download, verify and commit the file."""
        respx.get(URL).mock(return_value=httpx.Response(200, content=CONTENT))
        dest = tmp_path / "dist" / "file.tar.xz"

        result = fetcher.fetch(URL, dest, sha256_hex(CONTENT))

        assert result.outcome is FetchOutcome.DOWNLOADED
        assert result.verified is True
        assert result.size_bytes == len(CONTENT)
        assert result.attempts == 1
        assert dest.read_bytes() == CONTENT
        assert leftover_parts(dest.parent) == []
        snap = progress.snapshot()
        assert snap.downloaded == 1
        assert snap.bytes_downloaded == len(CONTENT)
        assert snap.in_flight == 0

    @respx.mock
    def test_download_without_checksum_unverified(self, fetcher, tmp_path):
        """Without an expected checksum the file is stored but not verified."""
        respx.get(URL).mock(return_value=httpx.Response(200, content=CONTENT))
        result = fetcher.fetch(URL, tmp_path / "f")

        assert result.verified is False
        assert result.checksum == sha256_hex(CONTENT)

    @respx.mock
    def test_retries_transient_errors(self, fetcher, tmp_path):
        """5xx responses and connection errors should be retried."""
        route = respx.get(URL)
        route.side_effect = [
            httpx.Response(503),
            httpx.ConnectError("refused"),
            httpx.Response(200, content=CONTENT),
        ]

        result = fetcher.fetch(URL, tmp_path / "f", sha256_hex(CONTENT))

        assert result.attempts == 3
        assert route.call_count == 3

    @respx.mock
    def test_gives_up_after_max_attempts(self, fetcher, tmp_path, progress):
        """Should raise the last transient error once attempts run out."""
        route = respx.get(URL).mock(return_value=httpx.Response(500))

        with pytest.raises(TransientNetworkError):
            fetcher.fetch(URL, tmp_path / "f")

        assert route.call_count == 3
        assert progress.snapshot().failed == 1
        assert not (tmp_path / "f").exists()

    @respx.mock
    def test_not_found_not_retried(self, fetcher, tmp_path):
        """A 404 should fail immediately."""
        route = respx.get(URL).mock(return_value=httpx.Response(404))

        with pytest.raises(NotFoundError) as exc_info:
            fetcher.fetch(URL, tmp_path / "f")

        assert exc_info.value.status_code == 404
        assert route.call_count == 1

    @respx.mock
    def test_rate_limit_is_transient(self, fetcher, tmp_path):
        """429 should be retried like a server error."""
        route = respx.get(URL)
        route.side_effect = [httpx.Response(429), httpx.Response(200, content=CONTENT)]

        result = fetcher.fetch(URL, tmp_path / "f")
        assert result.attempts == 2

    @respx.mock
    def test_checksum_mismatch_leaves_nothing(self, fetcher, tmp_path):
        """A corrupt body should never be committed, even after retries."""
        respx.get(URL).mock(return_value=httpx.Response(200, content=b"corrupt"))
        dest = tmp_path / "f"

        with pytest.raises(ChecksumMismatch) as exc_info:
            fetcher.fetch(URL, dest, sha256_hex(CONTENT))

        assert exc_info.value.actual == sha256_hex(b"corrupt")
        assert not dest.exists()
        assert leftover_parts(tmp_path) == []

    @respx.mock
    def test_checksum_mismatch_recovers_on_retry(self, fetcher, tmp_path):
        """A mismatch followed by a good body should succeed."""
        route = respx.get(URL)
        route.side_effect = [
            httpx.Response(200, content=b"corrupt"),
            httpx.Response(200, content=CONTENT),
        ]
        dest = tmp_path / "f"

        fetcher.fetch(URL, dest, sha256_hex(CONTENT))
        assert dest.read_bytes() == CONTENT

    @respx.mock(assert_all_called=False)
    def test_existing_valid_file_not_downloaded(self, fetcher, tmp_path, progress):
        """A present file with a matching checksum should not hit the network."""
        route = respx.get(URL).mock(return_value=httpx.Response(200, content=CONTENT))
        dest = tmp_path / "f"
        dest.write_bytes(CONTENT)

        result = fetcher.fetch(URL, dest, sha256_hex(CONTENT))

        assert result.outcome is FetchOutcome.ALREADY_PRESENT
        assert result.verified is True
        assert route.call_count == 0
        assert progress.snapshot().already_present == 1

    @respx.mock
    def test_stale_file_replaced(self, fetcher, tmp_path):
        """A present file with the wrong content should be re-downloaded."""
        respx.get(URL).mock(return_value=httpx.Response(200, content=CONTENT))
        dest = tmp_path / "f"
        dest.write_bytes(b"stale")

        result = fetcher.fetch(URL, dest, sha256_hex(CONTENT))

        assert result.outcome is FetchOutcome.DOWNLOADED
        assert dest.read_bytes() == CONTENT

    @respx.mock(assert_all_called=False)
    def test_existing_file_trusted_without_verification(self, client, tmp_path):
        """With verify_existing off, a present file is trusted as-is."""
        route = respx.get(URL).mock(return_value=httpx.Response(200, content=CONTENT))
        fetcher = Fetcher(client, verify_existing=False)
        dest = tmp_path / "f"
        dest.write_bytes(b"anything")

        result = fetcher.fetch(URL, dest, sha256_hex(CONTENT))

        assert result.outcome is FetchOutcome.ALREADY_PRESENT
        assert result.verified is False
        assert route.call_count == 0

    @respx.mock
    def test_force_redownloads(self, fetcher, tmp_path):
        """force=True should download even when a valid file exists."""
        route = respx.get(URL).mock(return_value=httpx.Response(200, content=CONTENT))
        dest = tmp_path / "f"
        dest.write_bytes(CONTENT)

        result = fetcher.fetch(URL, dest, sha256_hex(CONTENT), force=True)

        assert result.outcome is FetchOutcome.DOWNLOADED
        assert route.call_count == 1

    def test_cancelled_before_start(self, client, tmp_path):
        """A set shutdown signal should cancel without any request."""
        shutdown = threading.Event()
        shutdown.set()
        fetcher = Fetcher(client, shutdown=shutdown)

        with pytest.raises(FetchCancelled) as exc_info:
            fetcher.fetch(URL, tmp_path / "f")
        assert exc_info.value.code == "cancelled"

    @respx.mock
    def test_cancelled_between_retries(self, client, tmp_path):
        """Shutdown during backoff should stop further attempts."""
        shutdown = threading.Event()
        route = respx.get(URL).mock(return_value=httpx.Response(503))
        fetcher = Fetcher(
            client,
            policy=RetryPolicy(max_attempts=5),
            shutdown=shutdown,
            sleep=lambda _delay: shutdown.set(),
        )

        with pytest.raises(FetchCancelled):
            fetcher.fetch(URL, tmp_path / "f")
        assert route.call_count == 1


class TestFetchText:
    """Tests for fetch_text and fetch_sha256."""

    @respx.mock
    def test_fetch_sha256(self, fetcher):
        """Should fetch and parse the .sha256 sidecar."""
        digest = sha256_hex(CONTENT)
        respx.get(f"{URL}.sha256").mock(
            return_value=httpx.Response(200, text=f"{digest}  file.tar.xz\n")
        )
        assert fetcher.fetch_sha256(URL) == digest

    @respx.mock
    def test_fetch_text_retries(self, fetcher):
        """Metadata fetches should use the same retry policy."""
        route = respx.get(URL)
        route.side_effect = [httpx.Response(502), httpx.Response(200, text="ok")]
        assert fetcher.fetch_text(URL) == "ok"

    @respx.mock
    def test_fetch_text_not_found(self, fetcher):
        """Missing metadata should raise NotFoundError."""
        respx.get(URL).mock(return_value=httpx.Response(404))
        with pytest.raises(NotFoundError):
            fetcher.fetch_text(URL)


class TestConcurrencyBound:
    """Tests for the in-flight limit."""

    @respx.mock
    def test_peak_in_flight_within_bound(self, client, tmp_path):
        """Concurrent fetches should never exceed max_in_flight."""
        release = threading.Event()

        def slow(request):
            release.wait(0.05)
            return httpx.Response(200, content=CONTENT)

        respx.get(url__startswith=f"{UPSTREAM}/many/").mock(side_effect=slow)
        progress = ProgressCounter()
        fetcher = Fetcher(client, progress=progress, max_in_flight=2)

        threads = [
            threading.Thread(
                target=fetcher.fetch,
                args=(f"{UPSTREAM}/many/{i}", tmp_path / str(i)),
            )
            for i in range(6)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snap = progress.snapshot()
        assert snap.downloaded == 6
        assert 1 <= snap.peak_in_flight <= 2


def test_compute_file_sha256(tmp_path):
    """compute_file_sha256 should match hashlib."""
    path = tmp_path / "f"
    path.write_bytes(CONTENT * 10000)
    assert compute_file_sha256(path) == sha256_hex(CONTENT * 10000)
