"""End-to-end tests for run_sync.

The upstream index is a local git repository and archive downloads are
mocked with respx. Toolchain mirroring is covered in test_toolchain_service.
"""

import threading
from pathlib import Path

import httpx
import pytest
import respx
from sqlalchemy import select

from rustmirror.config import ConfigError
from rustmirror.db import get_session
from rustmirror.models import SyncRun
from rustmirror.sync import SyncLockedError, run_sync, sync_lock
from rustmirror.types import SyncStatus

from helpers import UPSTREAM, UpstreamIndex

ARCHIVES = {
    "crates/1/A/1.0/A-1.0.crate",
    "crates/1/B/2.0/B-2.0.crate",
    "crates/1/A/1.1/A-1.1.crate",
}
STRAY = "crates/1/C/1.0/C-1.0.crate"


@pytest.fixture
def upstream(tmp_path: Path) -> UpstreamIndex:
    """Upstream index with A@1.0, B@2.0 and A@1.1."""
    index = UpstreamIndex(tmp_path / "upstream-index")
    index.publish("A", "1.0")
    index.publish("B", "2.0")
    index.publish("A", "1.1")
    index.commit()
    return index


@pytest.fixture
def crates_settings(make_settings, upstream):
    return make_settings(
        rustup_enabled=False,
        crates_source_index=str(upstream.path),
        crates_source=f"{UPSTREAM}/crates/{{crate}}/{{crate}}-{{version}}.crate",
        retries=0,
    )


def mock_archives(*pairs: tuple[str, str]) -> dict[str, respx.Route]:
    """Serve each archive with the content its index checksum was computed from."""
    routes = {}
    for name, version in pairs:
        routes[f"{name}@{version}"] = respx.get(
            f"{UPSTREAM}/crates/{name}/{name}-{version}.crate"
        ).mock(return_value=httpx.Response(200, content=f"{name}-{version}".encode()))
    return routes


def mirror_files(root: Path) -> dict[str, tuple[int, int]]:
    """(mtime_ns, size) of every mirrored file, ignoring git and database internals."""
    files = {}
    for path in root.rglob("*"):
        relative = path.relative_to(root).as_posix()
        if not path.is_file() or relative.startswith("crates.io-index/.git/"):
            continue
        if relative.startswith("mirror.db") or relative == ".sync.lock":
            continue
        stat = path.stat()
        files[relative] = (stat.st_mtime_ns, stat.st_size)
    return files


def noop_sleep(_delay: float) -> None:
    return None


class TestRunSync:
    """Tests for a full crates sync pass."""

    @respx.mock
    def test_full_sync_and_prune(self, crates_settings, mirror_path, client):
        """Three index records give three verified archives and the stray goes."""
        mock_archives(("A", "1.0"), ("B", "2.0"), ("A", "1.1"))
        stray = mirror_path / STRAY
        stray.parent.mkdir(parents=True)
        stray.write_bytes(b"left over")

        outcome = run_sync(crates_settings, client=client, sleep=noop_sleep)

        assert outcome.ok
        [report] = outcome.reports
        assert report.downloaded == 3
        assert report.referenced == ARCHIVES
        for relative in ARCHIVES:
            assert (mirror_path / relative).is_file()
        assert outcome.prune is not None
        assert outcome.prune.deleted == [STRAY]
        assert not stray.exists()
        assert (mirror_path / "crates.io-index" / "1" / "a").is_file()

    @respx.mock
    def test_scoped_sync(self, crates_settings, mirror_path, client, tmp_path):
        """A vendor directory with A@1.0 downloads only that archive."""
        routes = mock_archives(("A", "1.0"), ("B", "2.0"), ("A", "1.1"))
        vendor = tmp_path / "vendor"
        (vendor / "A").mkdir(parents=True)
        (vendor / "A" / "Cargo.toml").write_text('[package]\nname = "A"\nversion = "1.0"\n')

        outcome = run_sync(crates_settings, scope_dir=vendor, client=client, sleep=noop_sleep)

        assert outcome.ok
        assert outcome.reports[0].downloaded == 1
        assert routes["A@1.0"].call_count == 1
        assert routes["B@2.0"].call_count == 0
        assert routes["A@1.1"].call_count == 0
        assert (mirror_path / "crates/1/A/1.0/A-1.0.crate").is_file()
        assert not (mirror_path / "crates/1/B").exists()

    @respx.mock
    def test_second_run_writes_nothing(self, crates_settings, mirror_path, client):
        """Against unchanged upstream a second pass downloads and rewrites nothing."""
        routes = mock_archives(("A", "1.0"), ("B", "2.0"), ("A", "1.1"))
        run_sync(crates_settings, client=client, sleep=noop_sleep)
        before = mirror_files(mirror_path)

        outcome = run_sync(crates_settings, client=client, sleep=noop_sleep)

        assert outcome.ok
        assert outcome.reports[0].downloaded == 0
        assert outcome.reports[0].already_present == 3
        assert outcome.prune is not None
        assert outcome.prune.deleted == []
        assert sum(route.call_count for route in routes.values()) == 3
        assert mirror_files(mirror_path) == before

    @respx.mock
    def test_new_upstream_version(self, crates_settings, upstream, client):
        """A version published between passes is picked up by the next one."""
        mock_archives(("A", "1.0"), ("B", "2.0"), ("A", "1.1"), ("B", "2.1"))
        run_sync(crates_settings, client=client, sleep=noop_sleep)

        upstream.publish("B", "2.1")
        upstream.commit()
        outcome = run_sync(crates_settings, client=client, sleep=noop_sleep)

        assert outcome.ok
        assert outcome.reports[0].downloaded == 1
        assert "crates/1/B/2.1/B-2.1.crate" in outcome.reports[0].referenced

    @respx.mock
    def test_dry_run_prune(self, crates_settings, mirror_path, client):
        """A dry-run prune reports the stray without deleting it."""
        mock_archives(("A", "1.0"), ("B", "2.0"), ("A", "1.1"))
        stray = mirror_path / STRAY
        stray.parent.mkdir(parents=True)
        stray.write_bytes(b"left over")

        outcome = run_sync(crates_settings, dry_run_prune=True, client=client, sleep=noop_sleep)

        assert outcome.prune is not None
        assert outcome.prune.dry_run is True
        assert outcome.prune.deleted == [STRAY]
        assert stray.exists()

    @respx.mock
    def test_prune_disabled(self, crates_settings, mirror_path, client):
        """prune_files=False leaves strays and says why."""
        mock_archives(("A", "1.0"), ("B", "2.0"), ("A", "1.1"))
        stray = mirror_path / STRAY
        stray.parent.mkdir(parents=True)
        stray.write_bytes(b"left over")

        outcome = run_sync(crates_settings, prune_files=False, client=client, sleep=noop_sleep)

        assert outcome.prune is not None
        assert outcome.prune.skipped == "pruning disabled"
        assert stray.exists()

    @respx.mock
    def test_failed_archive_still_prunes_strays(self, crates_settings, mirror_path, client):
        """A failed download fails the pass but keeps the reference set complete."""
        mock_archives(("A", "1.0"), ("A", "1.1"))
        respx.get(f"{UPSTREAM}/crates/B/B-2.0.crate").mock(return_value=httpx.Response(404))
        stray = mirror_path / STRAY
        stray.parent.mkdir(parents=True)
        stray.write_bytes(b"left over")

        outcome = run_sync(crates_settings, client=client, sleep=noop_sleep)

        assert not outcome.ok
        assert outcome.status is SyncStatus.FAILED
        assert [f.identifier for f in outcome.reports[0].failed] == ["B@2.0"]
        assert outcome.prune is not None
        assert outcome.prune.deleted == [STRAY]

    def test_unreachable_index_skips_prune(self, make_settings, mirror_path, client, tmp_path):
        """Without a committed index nothing under crates/ is deleted."""
        settings = make_settings(rustup_enabled=False, crates_source_index=str(tmp_path / "nowhere"))
        stray = mirror_path / STRAY
        stray.parent.mkdir(parents=True)
        stray.write_bytes(b"left over")

        outcome = run_sync(settings, client=client, sleep=noop_sleep)

        assert outcome.status is SyncStatus.FAILED
        assert outcome.reports[0].aborted is not None
        assert outcome.prune is not None
        assert outcome.prune.skipped == "no syncer produced a complete reference set"
        assert stray.exists()

    def test_cancelled_before_start(self, crates_settings, mirror_path, client):
        """A pass whose shutdown flag is already set is cancelled and prunes nothing."""
        shutdown = threading.Event()
        shutdown.set()

        outcome = run_sync(crates_settings, shutdown=shutdown, client=client, sleep=noop_sleep)

        assert outcome.status is SyncStatus.CANCELLED
        assert outcome.reports[0].cancelled is True
        assert outcome.prune is not None
        assert outcome.prune.skipped is not None
        assert not (mirror_path / "crates.io-index").exists()

    @respx.mock
    def test_resume_after_interruption(self, make_settings, upstream, mirror_path, client):
        """A pass stopped after one download is finished by the next without refetching."""
        settings = make_settings(
            rustup_enabled=False,
            crates_source_index=str(upstream.path),
            crates_source=f"{UPSTREAM}/crates/{{crate}}/{{crate}}-{{version}}.crate",
            retries=0,
            concurrency=1,
        )
        shutdown = threading.Event()
        interrupt = {"pending": True}

        def serve_archive(request: httpx.Request) -> httpx.Response:
            # the first download completes, then shutdown is requested
            if interrupt["pending"]:
                interrupt["pending"] = False
                shutdown.set()
            return httpx.Response(200, content=Path(request.url.path).stem.encode())

        routes = [
            respx.get(f"{UPSTREAM}/crates/{name}/{name}-{version}.crate").mock(
                side_effect=serve_archive
            )
            for name, version in (("A", "1.0"), ("B", "2.0"), ("A", "1.1"))
        ]
        stray = mirror_path / STRAY
        stray.parent.mkdir(parents=True)
        stray.write_bytes(b"left over")

        first = run_sync(settings, shutdown=shutdown, client=client, sleep=noop_sleep)

        assert first.status is SyncStatus.CANCELLED
        assert first.reports[0].downloaded == 1
        assert first.prune is not None
        assert first.prune.skipped is not None
        assert stray.exists()
        partial = [f for f in mirror_files(mirror_path) if f in ARCHIVES]
        assert len(partial) == 1

        second = run_sync(settings, client=client, sleep=noop_sleep)

        assert second.ok
        assert second.reports[0].downloaded == 2
        assert second.reports[0].already_present == 1
        assert [route.call_count for route in routes] == [1, 1, 1]
        assert {f for f in mirror_files(mirror_path) if f.startswith("crates/")} == ARCHIVES
        for relative in ARCHIVES:
            assert (mirror_path / relative).read_bytes() == Path(relative).stem.encode()

    @respx.mock
    def test_records_sync_run(self, crates_settings, session_factory, client):
        """Each pass leaves a finished SyncRun row with its summary."""
        mock_archives(("A", "1.0"), ("B", "2.0"), ("A", "1.1"))

        outcome = run_sync(
            crates_settings, client=client, session_factory=session_factory, sleep=noop_sleep
        )

        with get_session(session_factory) as session:
            runs = session.scalars(select(SyncRun)).all()
            assert [r.id for r in runs] == [outcome.run_id]
            assert runs[0].status == "succeeded"
            assert runs[0].finished_at is not None
            assert runs[0].summary["reports"][0]["name"] == "crates"

    def test_missing_mirror_directory(self, make_settings, mirror_path):
        """Syncing a directory that was never initialized is a configuration error."""
        settings = make_settings()
        mirror_path.rmdir()

        with pytest.raises(ConfigError, match="does not exist"):
            run_sync(settings)


class TestSyncLock:
    """Tests for sync_lock."""

    def test_second_holder_rejected(self, mirror_path):
        """Only one pass may hold a mirror at a time."""
        with sync_lock(mirror_path):
            with pytest.raises(SyncLockedError) as exc_info:
                with sync_lock(mirror_path):
                    pass
        assert exc_info.value.code == "sync_locked"

    def test_released_after_use(self, mirror_path):
        """The lock can be taken again once released."""
        with sync_lock(mirror_path):
            pass
        with sync_lock(mirror_path):
            pass

    def test_run_sync_respects_lock(self, crates_settings, mirror_path, client):
        """run_sync refuses to start while another pass holds the lock."""
        with sync_lock(mirror_path):
            with pytest.raises(SyncLockedError):
                run_sync(crates_settings, client=client)
