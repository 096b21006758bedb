"""Single-file download with retries, checksum verification and atomic commit.

This module handles:
- Streaming a remote file into a temporary sibling of its destination
- SHA-256 verification while streaming
- Atomic rename into place, so readers never see a partial file
- Retrying transient failures with exponential backoff
- Skipping files that are already present and valid
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeVar

import httpx

from rustmirror.fetch.progress import ProgressCounter
from rustmirror.types import FetchOutcome

logger = logging.getLogger(__name__)

# Timeout for a single request (seconds)
DEFAULT_TIMEOUT = 300

# Chunk size for downloads and hashing (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Suffix of in-progress downloads
PART_SUFFIX = ".part"

# Client errors that still indicate a transient condition
TRANSIENT_CLIENT_STATUSES = frozenset({408, 425, 429})

T = TypeVar("T")


class FetchError(Exception):
    """Base error for fetch failures."""

    def __init__(self, message: str, url: str, code: str = "fetch_error") -> None:
        """Initialize FetchError.

        Args:
            message: Error description.
            url: URL being fetched.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.url = url
        self.code = code


class TransientNetworkError(FetchError):
    """Connection errors, timeouts and 5xx responses."""

    def __init__(
        self, message: str, url: str, code: str = "transient_network_error"
    ) -> None:
        super().__init__(message, url, code)


class NotFoundError(FetchError):
    """A 4xx response: the resource does not exist upstream."""

    def __init__(self, url: str, status_code: int, code: str = "not_found") -> None:
        super().__init__(f"HTTP {status_code} for {url}", url, code)
        self.status_code = status_code


class ChecksumMismatch(FetchError):
    """Downloaded content did not match the expected SHA-256."""

    def __init__(
        self, url: str, expected: str, actual: str, code: str = "checksum_mismatch"
    ) -> None:
        super().__init__(
            f"Checksum mismatch for {url}: expected {expected}, got {actual}",
            url,
            code,
        )
        self.expected = expected
        self.actual = actual


class FilesystemError(FetchError):
    """Local I/O failed while staging or committing a file."""

    def __init__(self, message: str, url: str, code: str = "filesystem_error") -> None:
        super().__init__(message, url, code)


class FetchCancelled(FetchError):
    """The shutdown signal was observed before the fetch completed."""

    def __init__(self, url: str, code: str = "cancelled") -> None:
        super().__init__(f"Cancelled before fetching {url}", url, code)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behavior shared by every fetch.

    Attributes:
        max_attempts: Total attempts including the first one.
        backoff_base: Delay before the second attempt (seconds).
        backoff_factor: Multiplier applied per further attempt.
        backoff_max: Upper bound on any single delay (seconds).
        retry_on: Error types worth another attempt.
    """

    max_attempts: int = 6
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    retry_on: tuple[type[FetchError], ...] = (TransientNetworkError, ChecksumMismatch)

    def __post_init__(self) -> None:
        """Validate the policy."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        """Return the delay after the given (1-based) failed attempt."""
        return min(
            self.backoff_base * self.backoff_factor ** (attempt - 1), self.backoff_max
        )

    def is_retryable(self, error: FetchError) -> bool:
        """Whether an error qualifies for another attempt."""
        return isinstance(error, self.retry_on)


@dataclass(frozen=True)
class FetchResult:
    """Result of a successful fetch."""

    path: Path
    outcome: FetchOutcome
    checksum: str | None
    size_bytes: int
    verified: bool
    attempts: int = 0


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def parse_sha256_sidecar(content: str, url: str) -> str:
    """Extract the digest from a ``.sha256`` sidecar (``<hex>  <filename>``).

    Raises:
        FetchError: If the sidecar does not start with a SHA-256 hex digest.
    """
    digest = content.strip().split(maxsplit=1)[0].lower() if content.strip() else ""
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise FetchError(f"Malformed checksum file at {url}", url, code="bad_sidecar")
    return digest


def write_file_atomic(dest_path: Path, data: bytes) -> bool:
    """Write data to dest_path via a temporary sibling and rename.

    Returns:
        False if dest_path already held exactly these bytes (nothing written).

    Raises:
        OSError: If the file cannot be written.
    """
    if dest_path.is_file() and dest_path.read_bytes() == data:
        return False
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent,
        prefix=f".{dest_path.name}.",
        suffix=PART_SUFFIX,
        delete=False,
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)
        tmp_file.write(data)
    try:
        os.replace(tmp_path, dest_path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return True


def copy_file_atomic(src_path: Path, dest_path: Path) -> bool:
    """Copy src_path to dest_path atomically unless the contents already match."""
    if dest_path.is_file() and compute_file_sha256(dest_path) == compute_file_sha256(
        src_path
    ):
        return False
    return write_file_atomic(dest_path, src_path.read_bytes())


def _raise_for_status(response: httpx.Response, url: str) -> None:
    """Map an HTTP error status onto the fetch error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status >= 500 or status in TRANSIENT_CLIENT_STATUSES:
        raise TransientNetworkError(
            f"HTTP {status} {response.reason_phrase} for {url}", url, code="http_error"
        )
    raise NotFoundError(url, status)


class Fetcher:
    """Retrying, verifying, bounded-concurrency downloader.

    One Fetcher is shared by every worker of a sync pass. It bounds the number
    of simultaneous network operations with a semaphore, so callers may use a
    thread pool of any size without exceeding the configured limit.
    """

    def __init__(
        self,
        client: httpx.Client,
        policy: RetryPolicy | None = None,
        progress: ProgressCounter | None = None,
        max_in_flight: int = 4,
        shutdown: threading.Event | None = None,
        sleep: Callable[[float], object] | None = None,
        verify_existing: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize Fetcher.

        Args:
            client: HTTPX client instance.
            policy: Retry policy (defaults to RetryPolicy()).
            progress: Shared progress counter.
            max_in_flight: Maximum simultaneous network operations.
            shutdown: Process-wide shutdown signal.
            sleep: Backoff sleep function; waits on the shutdown signal if None.
            verify_existing: Re-hash files already on disk when a checksum is known.
            timeout: Per-request timeout in seconds.
        """
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.client = client
        self.policy = policy or RetryPolicy()
        self.progress = progress or ProgressCounter()
        self.shutdown = shutdown or threading.Event()
        self.verify_existing = verify_existing
        self.timeout = timeout
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._sleep_fn = sleep

    def fetch(
        self,
        url: str,
        dest_path: Path,
        expected_checksum: str | None = None,
        force: bool = False,
    ) -> FetchResult:
        """Download url to dest_path unless a valid copy is already there.

        Args:
            url: URL to download from.
            dest_path: Final location of the file.
            expected_checksum: Expected SHA-256 hex digest (optional).
            force: Download even if dest_path exists.

        Returns:
            FetchResult describing how the file was obtained.

        Raises:
            NotFoundError: If the resource does not exist upstream.
            TransientNetworkError: If retries ran out on network errors.
            ChecksumMismatch: If retries ran out on corrupt content.
            FilesystemError: If the file could not be written.
            FetchCancelled: If shutdown was requested.
        """
        expected = expected_checksum.lower() if expected_checksum else None
        self.progress.record_attempt()

        if self.shutdown.is_set():
            self.progress.record_failure()
            raise FetchCancelled(url)

        if not force and dest_path.is_file():
            existing = self._check_existing(dest_path, expected)
            if existing is not None:
                self.progress.record_already_present()
                return existing
            logger.warning("Existing %s failed verification, re-downloading", dest_path)

        try:
            result, attempts = self._with_retries(
                url, lambda: self._download_once(url, dest_path, expected)
            )
        except FetchError:
            self.progress.record_failure()
            raise

        self.progress.record_download(result.size_bytes)
        return replace(result, attempts=attempts)

    def fetch_text(self, url: str) -> str:
        """Fetch a small text document with the same retry policy.

        Raises:
            FetchError: Any error from the fetch taxonomy.
        """
        text, _ = self._with_retries(url, lambda: self._get_text(url))
        return text

    def fetch_sha256(self, url: str) -> str:
        """Fetch the ``.sha256`` sidecar of url and return its digest."""
        sidecar_url = f"{url}.sha256"
        return parse_sha256_sidecar(self.fetch_text(sidecar_url), sidecar_url)

    def _check_existing(self, dest_path: Path, expected: str | None) -> FetchResult | None:
        """Return an ALREADY_PRESENT result if dest_path can be trusted."""
        try:
            size = dest_path.stat().st_size
            if expected is None or not self.verify_existing:
                return FetchResult(
                    path=dest_path,
                    outcome=FetchOutcome.ALREADY_PRESENT,
                    checksum=None,
                    size_bytes=size,
                    verified=False,
                )
            actual = compute_file_sha256(dest_path)
        except OSError as e:
            logger.warning("Could not read existing %s: %s", dest_path, e)
            return None

        if actual != expected:
            return None
        return FetchResult(
            path=dest_path,
            outcome=FetchOutcome.ALREADY_PRESENT,
            checksum=actual,
            size_bytes=size,
            verified=True,
        )

    def _with_retries(self, url: str, operation: Callable[[], T]) -> tuple[T, int]:
        """Run operation under the concurrency bound, retrying per policy."""
        attempt = 0
        while True:
            attempt += 1
            if self.shutdown.is_set():
                raise FetchCancelled(url)
            try:
                with self._slots:
                    self.progress.enter()
                    try:
                        return operation(), attempt
                    finally:
                        self.progress.leave()
            except FetchError as e:
                if not self.policy.is_retryable(e):
                    raise
                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "Giving up on %s after %d attempts: %s", url, attempt, e
                    )
                    raise
                delay = self.policy.delay(attempt)
                logger.warning(
                    "%s (attempt %d/%d), retrying in %.1f seconds",
                    e,
                    attempt,
                    self.policy.max_attempts,
                    delay,
                )
                self._sleep(delay)

    def _sleep(self, delay: float) -> None:
        if self._sleep_fn is not None:
            self._sleep_fn(delay)
        else:
            self.shutdown.wait(delay)

    def _get_text(self, url: str) -> str:
        try:
            response = self.client.get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timeout fetching {url}", url, code="timeout") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Network error fetching {url}: {e}", url) from e
        _raise_for_status(response, url)
        return response.text

    def _download_once(
        self, url: str, dest_path: Path, expected: str | None
    ) -> FetchResult:
        """One attempt: stream to a temp file, verify, rename into place."""
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = tempfile.NamedTemporaryFile(
                dir=dest_path.parent,
                prefix=f".{dest_path.name}.",
                suffix=PART_SUFFIX,
                delete=False,
            )
        except OSError as e:
            raise FilesystemError(f"Cannot stage {dest_path}: {e}", url) from e

        tmp_path = Path(tmp_file.name)
        committed = False
        try:
            sha256 = hashlib.sha256()
            total_bytes = 0
            with tmp_file, self.client.stream("GET", url, timeout=self.timeout) as response:
                _raise_for_status(response, url)
                for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                    tmp_file.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

            computed = sha256.hexdigest()
            if expected is not None and computed != expected:
                raise ChecksumMismatch(url, expected, computed)

            os.replace(tmp_path, dest_path)
            committed = True
            logger.debug("Downloaded %s (%d bytes)", dest_path, total_bytes)
            return FetchResult(
                path=dest_path,
                outcome=FetchOutcome.DOWNLOADED,
                checksum=computed,
                size_bytes=total_bytes,
                verified=expected is not None,
            )

        except httpx.TimeoutException as e:
            raise TransientNetworkError(
                f"Timeout downloading {url}", url, code="timeout"
            ) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Network error downloading {url}: {e}", url) from e
        except OSError as e:
            raise FilesystemError(f"Cannot write {dest_path}: {e}", url) from e
        finally:
            if not committed:
                tmp_path.unlink(missing_ok=True)


__all__ = [
    "ChecksumMismatch",
    "DOWNLOAD_CHUNK_SIZE",
    "FetchCancelled",
    "FetchError",
    "FetchResult",
    "Fetcher",
    "FilesystemError",
    "NotFoundError",
    "PART_SUFFIX",
    "RetryPolicy",
    "TransientNetworkError",
    "compute_file_sha256",
    "copy_file_atomic",
    "parse_sha256_sidecar",
    "write_file_atomic",
]
