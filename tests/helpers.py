"""Helpers shared by test modules."""

import hashlib
import json
import subprocess
from pathlib import Path

from rustmirror.registry.index import index_path

UPSTREAM = "https://upstream.test"


def sha256_hex(data: bytes) -> str:
    """SHA-256 hex digest of bytes."""
    return hashlib.sha256(data).hexdigest()


def git(cwd: Path, *args: str) -> str:
    """Run git in cwd with a fixed identity and return stdout."""
    result = subprocess.run(
        [
            "git",
            "-c",
            "user.name=Test",
            "-c",
            "user.email=test@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def index_line(name: str, version: str, cksum: str, yanked: bool = False) -> str:
    """One JSON line of a registry index file."""
    return json.dumps(
        {
            "name": name,
            "vers": version,
            "deps": [],
            "cksum": cksum,
            "features": {},
            "yanked": yanked,
        }
    )


def channel_manifest(date: str, components: dict[str, dict[str, bytes]]) -> str:
    """Render a minimal channel manifest.

    Args:
        date: Release date.
        components: component name -> {target: archive content}; each entry
            gets a .tar.xz URL under dist/<date>/ and its SHA-256.
    """
    lines = ['manifest-version = "2"', f'date = "{date}"', ""]
    for component, targets in components.items():
        for target, content in targets.items():
            suffix = "" if target == "*" else f"-{target}"
            url = f"{UPSTREAM}/dist/{date}/{component}-nightly{suffix}.tar.xz"
            lines += [
                f'[pkg.{component}.target."{target}"]',
                "available = true",
                f'xz_url = "{url}"',
                f'xz_hash = "{sha256_hex(content)}"',
                "",
            ]
    return "\n".join(lines)


class UpstreamIndex:
    """A throwaway git repository standing in for the upstream registry index."""

    def __init__(self, path: Path) -> None:
        self.path = path
        path.mkdir()
        git(path, "init", "-q", "-b", "master")
        (path / "config.json").write_text(json.dumps({"dl": "https://static.crates.io/crates"}))

    def publish(self, name: str, version: str, content: bytes | None = None) -> None:
        """Append a version to a crate file; the checksum is of content."""
        line = index_line(name, version, sha256_hex(content or f"{name}-{version}".encode()))
        self.write_line(index_path(name), line)

    def write_line(self, rel_path: str, line: str) -> None:
        path = self.path / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def commit(self, message: str = "update") -> str:
        git(self.path, "add", "-A")
        git(self.path, "commit", "-q", "-m", message)
        return git(self.path, "rev-parse", "HEAD")
