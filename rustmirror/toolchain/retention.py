"""Retention of dated channel releases.

Rolling channels publish a new dated manifest regularly (nightly every day).
Which of the mirrored releases stay is decided here, as a pure function of
the available dates, a policy and the current time, so the decision can be
tested without real time passing.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta


@dataclass(frozen=True)
class RetentionPolicy:
    """How many dated releases of a channel to keep.

    Attributes:
        keep_latest: Keep the N most recent dates; None keeps all, 0 disables
            the channel entirely.
        max_age_days: Also drop dates older than this many days.
    """

    keep_latest: int | None = None
    max_age_days: int | None = None

    def __post_init__(self) -> None:
        """Validate the policy."""
        if self.keep_latest is not None and self.keep_latest < 0:
            raise ValueError("keep_latest must not be negative")
        if self.max_age_days is not None and self.max_age_days < 1:
            raise ValueError("max_age_days must be at least 1")

    @property
    def disabled(self) -> bool:
        """Whether the channel is not mirrored at all."""
        return self.keep_latest == 0


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def retained_dates(
    available: Iterable[str], policy: RetentionPolicy, now: datetime
) -> list[str]:
    """Return the release dates to keep, newest first.

    The newest available date is always kept unless the channel is disabled,
    so a mirror never loses the release its current manifest points at.

    Args:
        available: ISO dates (YYYY-MM-DD) of mirrored releases.
        policy: Retention policy of the channel.
        now: Reference time for the age limit.

    Returns:
        Retained dates sorted newest first.
    """
    dates = sorted(set(available), reverse=True)
    if not dates or policy.disabled:
        return []

    kept = dates if policy.keep_latest is None else dates[: policy.keep_latest]

    if policy.max_age_days is not None:
        cutoff = now.date() - timedelta(days=policy.max_age_days)
        kept = [d for d in kept if (parsed := _parse_date(d)) is not None and parsed >= cutoff]

    if dates[0] not in kept:
        kept.insert(0, dates[0])
    return kept


__all__ = ["RetentionPolicy", "retained_dates"]
