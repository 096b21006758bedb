"""Thread-safe progress accounting shared by concurrent fetches."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time copy of a ProgressCounter."""

    attempted: int = 0
    downloaded: int = 0
    already_present: int = 0
    failed: int = 0
    bytes_downloaded: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0

    @property
    def completed(self) -> int:
        """Files that reached a final outcome."""
        return self.downloaded + self.already_present + self.failed


class ProgressCounter:
    """Counts fetch outcomes across worker threads.

    This is the only state mutated concurrently by fetch workers; every
    update happens under one lock. An optional listener receives a snapshot
    after each completed file (used by the CLI to drive a progress bar).
    """

    def __init__(
        self, listener: Callable[[ProgressSnapshot], None] | None = None
    ) -> None:
        self._lock = threading.Lock()
        self._listener = listener
        self._attempted = 0
        self._downloaded = 0
        self._already_present = 0
        self._failed = 0
        self._bytes = 0
        self._in_flight = 0
        self._peak_in_flight = 0

    def record_attempt(self) -> None:
        with self._lock:
            self._attempted += 1

    def record_download(self, size_bytes: int) -> None:
        with self._lock:
            self._downloaded += 1
            self._bytes += size_bytes
        self._notify()

    def record_already_present(self) -> None:
        with self._lock:
            self._already_present += 1
        self._notify()

    def record_failure(self) -> None:
        with self._lock:
            self._failed += 1
        self._notify()

    def enter(self) -> None:
        """Mark one network operation as started."""
        with self._lock:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)

    def leave(self) -> None:
        """Mark one network operation as finished."""
        with self._lock:
            self._in_flight -= 1

    def snapshot(self) -> ProgressSnapshot:
        """Return a consistent copy of all counters."""
        with self._lock:
            return ProgressSnapshot(
                attempted=self._attempted,
                downloaded=self._downloaded,
                already_present=self._already_present,
                failed=self._failed,
                bytes_downloaded=self._bytes,
                in_flight=self._in_flight,
                peak_in_flight=self._peak_in_flight,
            )

    def _notify(self) -> None:
        if self._listener is not None:
            self._listener(self.snapshot())


__all__ = ["ProgressCounter", "ProgressSnapshot"]
