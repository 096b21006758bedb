"""Registry index synchronization.

The crates.io index is a git repository with one file per crate, each line a
JSON record of one published version. Files are sharded by name::

    1/a            (one-letter names)
    2/ab           (two-letter names)
    3/a/abc        (three-letter names)
    se/rd/serde    (everything else)

The first sync clones the index into a staging directory, validates every
file and then renames it into place. Later syncs fetch, validate every file
that changed since the recorded cursor straight from the fetched objects,
and only then move the checkout to the new head. A failure at any point
before that leaves the previous checkout and cursor untouched.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.orm import Session, sessionmaker

from rustmirror.db import get_session
from rustmirror.fetch.fetcher import write_file_atomic
from rustmirror.registry.git import GitError, GitRepo
from rustmirror.registry.models import SyncState

if TYPE_CHECKING:
    from rustmirror.config import Settings

logger = logging.getLogger(__name__)

# Directory of the index checkout under the mirror root
INDEX_DIR = "crates.io-index"

# Registry identifier of the SyncState row
REGISTRY_NAME = "crates.io"

CONFIG_JSON = "config.json"

_CHECKSUM_RE = re.compile(r"^[0-9a-f]{64}$")


class IndexSyncError(Exception):
    """Base error for index sync failures."""

    def __init__(self, message: str, code: str = "index_sync_error") -> None:
        """Initialize IndexSyncError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class IndexFetchError(IndexSyncError):
    """The upstream index could not be retrieved."""

    def __init__(self, message: str, code: str = "index_fetch_error") -> None:
        super().__init__(message, code)


class IndexInconsistency(IndexSyncError):
    """The retrieved index content is corrupt or contradicts its layout."""

    def __init__(self, path: str, message: str, code: str = "index_inconsistency") -> None:
        super().__init__(f"{path}: {message}", code)
        self.path = path


class IndexDependency(BaseModel):
    """One dependency entry of an index line."""

    model_config = ConfigDict(extra="ignore")

    name: str
    req: str = "*"
    kind: str | None = None
    optional: bool = False
    package: str | None = None


class IndexLine(BaseModel):
    """Schema of one JSON line of an index file."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    vers: str = Field(min_length=1)
    cksum: str | None = None
    yanked: bool = False
    deps: list[IndexDependency] = Field(default_factory=list)
    features: dict[str, list[str]] = Field(default_factory=dict)
    features2: dict[str, list[str]] | None = None

    @field_validator("cksum")
    @classmethod
    def validate_cksum(cls, v: str | None) -> str | None:
        """Require a lowercase SHA-256 hex digest when present."""
        if v is None or v == "":
            return None
        v = v.lower()
        if not _CHECKSUM_RE.match(v):
            raise ValueError("cksum must be a SHA-256 hex digest")
        return v

    @field_validator("vers")
    @classmethod
    def validate_vers(cls, v: str) -> str:
        """Versions become path components, so they must be plain."""
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError(f"unusable version {v!r}")
        return v


@dataclass(frozen=True, slots=True)
class IndexRecord:
    """One published (name, version) of the registry."""

    name: str
    version: str
    checksum: str | None
    yanked: bool = False
    dependencies: tuple[str, ...] = ()
    features: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.version)

    @classmethod
    def from_line(cls, line: IndexLine) -> IndexRecord:
        features = set(line.features) | set(line.features2 or {})
        return cls(
            name=line.name,
            version=line.vers,
            checksum=line.cksum,
            yanked=line.yanked,
            dependencies=tuple(dep.package or dep.name for dep in line.deps),
            features=tuple(sorted(features)),
        )


@dataclass(frozen=True)
class IndexSnapshot:
    """Committed state of the index.

    Attributes:
        head: Upstream commit the checkout corresponds to.
        records: Every record of the index.
        delta: Keys of records added or changed since the previous cursor.
    """

    head: str
    records: tuple[IndexRecord, ...]
    delta: frozenset[tuple[str, str]] = frozenset()

    def keys(self) -> frozenset[tuple[str, str]]:
        """All (name, version) pairs of the snapshot."""
        return frozenset(r.key for r in self.records)


def index_path(name: str) -> str:
    """Return the index file path of a crate name.

    Args:
        name: Crate name (any case).

    Returns:
        Path relative to the index root, lowercase.
    """
    name = name.lower()
    if len(name) == 1:
        return f"1/{name}"
    if len(name) == 2:
        return f"2/{name}"
    if len(name) == 3:
        return f"3/{name[0]}/{name}"
    return f"{name[0:2]}/{name[2:4]}/{name}"


def is_index_file(path: str) -> bool:
    """Whether a repository path is a crate file (not config or docs)."""
    basename = path.rsplit("/", 1)[-1]
    return bool(basename) and not basename.startswith(".") and index_path(basename) == path


def parse_index_file(content: str, path: str) -> list[IndexRecord]:
    """Parse and validate the content of one index file.

    Raises:
        IndexInconsistency: If a line does not parse, or names a crate that
            does not belong in this file.
    """
    records = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            parsed = IndexLine.model_validate_json(line)
        except ValidationError as e:
            raise IndexInconsistency(path, f"line {lineno}: {e.errors()[0]['msg']}") from e
        if index_path(parsed.name) != path:
            raise IndexInconsistency(
                path, f"line {lineno}: crate {parsed.name!r} belongs in {index_path(parsed.name)}"
            )
        records.append(IndexRecord.from_line(parsed))
    return records


def read_index_tree(root: Path) -> tuple[IndexRecord, ...]:
    """Parse every crate file of a checked-out index.

    Raises:
        IndexInconsistency: If any file is invalid.
    """
    records: list[IndexRecord] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        for filename in sorted(filenames):
            rel_path = filename if rel_dir == "." else f"{rel_dir}/{filename}"
            if not is_index_file(rel_path):
                continue
            try:
                content = (Path(dirpath) / filename).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise IndexInconsistency(rel_path, f"unreadable: {e}") from e
            records.extend(parse_index_file(content, rel_path))
    return tuple(records)


def registry_config(base_url: str) -> dict[str, str]:
    """config.json entries that send cargo to the mirror for downloads."""
    return {"dl": f"{base_url}/crates", "api": base_url}


def rewrite_config_json(repo: GitRepo, base_url: str) -> bool:
    """Point the index config at the mirror and commit the change.

    Args:
        repo: Index checkout.
        base_url: Public URL of the mirror.

    Returns:
        True if config.json changed.
    """
    config_path = repo.path / CONFIG_JSON
    current: dict[str, object] = {}
    if config_path.is_file():
        try:
            current = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Replacing unparseable %s", config_path)
    desired = {**current, **registry_config(base_url)}
    if desired == current:
        return False

    write_file_atomic(config_path, (json.dumps(desired, indent=2) + "\n").encode())
    repo.commit_paths([CONFIG_JSON], "Rewrite config.json")
    logger.info("Rewrote %s for %s", CONFIG_JSON, base_url)
    return True


class IndexSyncer:
    """Keeps the local index checkout in step with upstream."""

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]) -> None:
        """Initialize IndexSyncer.

        Args:
            settings: Settings bound to the mirror.
            session_factory: Session factory of the mirror database.
        """
        self.index_dir = settings.mirror_path / INDEX_DIR
        self.staging_dir = settings.mirror_path / f"{INDEX_DIR}.staging"
        self.source = settings.crates_source_index
        self.branch = settings.crates_source_branch
        self.base_url = settings.base_url
        self.session_factory = session_factory

    def sync(self) -> IndexSnapshot:
        """Bring the index up to date and return the committed snapshot.

        Returns:
            IndexSnapshot with all records and the delta since the last sync.

        Raises:
            IndexFetchError: If upstream could not be reached.
            IndexInconsistency: If upstream content is invalid.
        """
        cursor = self._load_cursor()
        repo = GitRepo(self.index_dir)
        if cursor is None or not repo.is_repo() or not repo.commit_exists(cursor):
            if cursor is not None:
                logger.warning("Index checkout does not match the recorded cursor, re-cloning")
            return self._full_sync()
        return self._incremental_sync(repo, cursor)

    def current_snapshot(self) -> IndexSnapshot | None:
        """Snapshot of the committed checkout without contacting upstream."""
        cursor = self._load_cursor()
        if cursor is None or not self.index_dir.is_dir():
            return None
        return IndexSnapshot(head=cursor, records=read_index_tree(self.index_dir))

    def _full_sync(self) -> IndexSnapshot:
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir)
        try:
            staged = GitRepo.clone(self.source, self.staging_dir, self.branch)
            head = staged.rev_parse("HEAD")
            if head is None:
                raise IndexFetchError(f"Clone of {self.source} has no {self.branch} commit")
            records = read_index_tree(self.staging_dir)
            if self.base_url:
                rewrite_config_json(staged, self.base_url)
        except GitError as e:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            raise IndexFetchError(f"Cannot clone {self.source}: {e}") from e
        except IndexSyncError:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            raise

        try:
            self._swap_in()
        except OSError as e:
            raise IndexSyncError(f"Cannot move index into place: {e}", code="filesystem_error") from e
        self._save_cursor(head)
        logger.info("Cloned index at %s with %d records", head[:12], len(records))
        return IndexSnapshot(
            head=head, records=records, delta=frozenset(r.key for r in records)
        )

    def _swap_in(self) -> None:
        """Replace the live checkout with the validated staging clone."""
        retired = self.index_dir.with_name(f"{INDEX_DIR}.old")
        if retired.exists():
            shutil.rmtree(retired)
        if self.index_dir.exists():
            os.replace(self.index_dir, retired)
        os.replace(self.staging_dir, self.index_dir)
        if retired.exists():
            shutil.rmtree(retired)

    def _incremental_sync(self, repo: GitRepo, cursor: str) -> IndexSnapshot:
        try:
            repo.fetch(self.branch)
            head = repo.rev_parse(f"origin/{self.branch}")
        except GitError as e:
            raise IndexFetchError(f"Cannot fetch {self.source}: {e}") from e
        if head is None:
            raise IndexFetchError(f"Upstream has no branch {self.branch}")

        if head == cursor:
            logger.info("Index unchanged at %s", head[:12])
            if self.base_url:
                rewrite_config_json(repo, self.base_url)
            return IndexSnapshot(head=head, records=read_index_tree(self.index_dir))

        try:
            delta = self._validate_changes(repo, cursor, head)
            repo.reset_hard(head)
            if self.base_url:
                rewrite_config_json(repo, self.base_url)
        except GitError as e:
            raise IndexFetchError(f"Cannot read fetched index: {e}") from e

        records = read_index_tree(self.index_dir)
        self._save_cursor(head)
        logger.info(
            "Index moved %s -> %s, %d records changed", cursor[:12], head[:12], len(delta)
        )
        return IndexSnapshot(head=head, records=records, delta=delta)

    def _validate_changes(self, repo: GitRepo, old: str, new: str) -> frozenset[tuple[str, str]]:
        """Validate every changed file at new and return the changed record keys."""
        delta: set[tuple[str, str]] = set()
        for status, path in repo.changed_paths(old, new):
            if status == "D" or not is_index_file(path):
                continue
            content = repo.show(new, path)
            if content is None:
                raise IndexInconsistency(path, f"listed as changed but missing at {new[:12]}")
            records = parse_index_file(content, path)

            previous: set[IndexRecord] = set()
            old_content = repo.show(old, path) if status != "A" else None
            if old_content is not None:
                try:
                    previous = set(parse_index_file(old_content, path))
                except IndexInconsistency:
                    logger.debug("Ignoring unparseable previous content of %s", path)
            delta.update(r.key for r in records if r not in previous)
        return frozenset(delta)

    def _load_cursor(self) -> str | None:
        with get_session(self.session_factory) as session:
            state = session.get(SyncState, REGISTRY_NAME)
            if state is None:
                return None
            if state.source != self.source or state.branch != self.branch:
                logger.info("Index source changed, re-cloning")
                return None
            return state.cursor

    def _save_cursor(self, head: str) -> None:
        with get_session(self.session_factory) as session:
            state = session.get(SyncState, REGISTRY_NAME)
            if state is None:
                session.add(
                    SyncState(
                        registry_name=REGISTRY_NAME,
                        source=self.source,
                        branch=self.branch,
                        cursor=head,
                    )
                )
            elif state.cursor != head or state.source != self.source or state.branch != self.branch:
                state.source = self.source
                state.branch = self.branch
                state.cursor = head


__all__ = [
    "INDEX_DIR",
    "IndexDependency",
    "IndexFetchError",
    "IndexInconsistency",
    "IndexLine",
    "IndexRecord",
    "IndexSnapshot",
    "IndexSyncError",
    "IndexSyncer",
    "index_path",
    "is_index_file",
    "parse_index_file",
    "read_index_tree",
    "registry_config",
    "rewrite_config_json",
]
