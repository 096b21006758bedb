"""Download module.

This module handles:
- Retrying, checksum-verifying downloads with atomic commit
- Bounding in-flight requests across worker threads
- Progress accounting shared by all workers
"""

from rustmirror.fetch.fetcher import (
    ChecksumMismatch,
    FetchCancelled,
    FetchError,
    Fetcher,
    FetchResult,
    FilesystemError,
    NotFoundError,
    RetryPolicy,
    TransientNetworkError,
    compute_file_sha256,
    parse_sha256_sidecar,
)
from rustmirror.fetch.pool import PoolResult, fetch_all, tally
from rustmirror.fetch.progress import ProgressCounter, ProgressSnapshot

__all__ = [
    # Fetcher
    "ChecksumMismatch",
    "FetchCancelled",
    "FetchError",
    "FetchResult",
    "Fetcher",
    "FilesystemError",
    "NotFoundError",
    "RetryPolicy",
    "TransientNetworkError",
    "compute_file_sha256",
    "parse_sha256_sidecar",
    # Pool
    "PoolResult",
    "fetch_all",
    "tally",
    # Progress
    "ProgressCounter",
    "ProgressSnapshot",
]
