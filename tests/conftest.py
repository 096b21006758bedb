"""Shared fixtures for rustmirror tests."""

from pathlib import Path

import httpx
import pytest

from rustmirror.config import Settings, load_settings
from rustmirror.db import open_session_factory
from rustmirror.fetch import Fetcher, ProgressCounter, RetryPolicy

from helpers import UPSTREAM


@pytest.fixture
def mirror_path(tmp_path: Path) -> Path:
    """An empty mirror directory."""
    path = tmp_path / "mirror"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(mirror_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Factory for settings bound to the test mirror, isolated from the environment."""
    monkeypatch.chdir(mirror_path.parent)

    def _make(**overrides: object) -> Settings:
        return load_settings(mirror_path, **overrides)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    """Settings bound to the test mirror with upstream pointing at the mock host."""
    return make_settings(
        rustup_source=UPSTREAM,
        crates_source=f"{UPSTREAM}/crates/{{crate}}/{{crate}}-{{version}}.crate",
        platforms_unix=["x86_64-unknown-linux-gnu"],
        platforms_windows=["x86_64-pc-windows-msvc"],
        retries=2,
    )


@pytest.fixture
def session_factory(settings: Settings):
    """Session factory on the mirror's SQLite database."""
    return open_session_factory(settings.db_url)


@pytest.fixture
def client():
    """Plain httpx client; respx intercepts its requests."""
    with httpx.Client() as http:
        yield http


@pytest.fixture
def progress() -> ProgressCounter:
    return ProgressCounter()


@pytest.fixture
def fetcher(client: httpx.Client, progress: ProgressCounter) -> Fetcher:
    """Fetcher with fast, sleepless retries."""
    return Fetcher(
        client,
        policy=RetryPolicy(max_attempts=3, backoff_base=0.01),
        progress=progress,
        max_in_flight=2,
        sleep=lambda _delay: None,
    )
