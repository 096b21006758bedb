"""Thin wrapper over the git CLI for the registry index checkout."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

_REV_RE = re.compile(r"^[0-9a-f]{4,64}$")

# Identity used for the local config.json commit
COMMITTER_NAME = "rustmirror"
COMMITTER_EMAIL = "rustmirror@localhost"


class GitError(Exception):
    """A git command failed."""

    def __init__(
        self, args: list[str], returncode: int, stderr: str, code: str = "git_error"
    ) -> None:
        """Initialize GitError.

        Args:
            args: The git arguments that failed.
            returncode: Exit status of git.
            stderr: Captured standard error.
            code: Error code for structured error handling.
        """
        detail = stderr.strip() or "no stderr"
        super().__init__(f"git {' '.join(args)} failed (exit {returncode}): {detail}")
        self.returncode = returncode
        self.stderr = stderr
        self.code = code


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    # Never block on a credential prompt
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["LC_ALL"] = "C"
    return env


def run_git(*args: str, cwd: Path | None = None, check: bool = True) -> subprocess.CompletedProcess[str]:
    """Run a git command and capture its output.

    Raises:
        GitError: If check is set and git exits non-zero, or git is missing.
    """
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            env=_git_env(),
        )
    except FileNotFoundError as e:
        raise GitError(list(args), 127, "git executable not found", code="git_missing") from e
    if check and result.returncode != 0:
        raise GitError(list(args), result.returncode, result.stderr)
    return result


class GitRepo:
    """Git operations on one local repository."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return run_git(*args, cwd=self.path, check=check)

    @classmethod
    def clone(cls, source: str, dest: Path, branch: str) -> GitRepo:
        """Clone a single branch of source into dest (which must not exist)."""
        logger.info("Cloning %s (%s) into %s", source, branch, dest)
        run_git("clone", "--quiet", "--single-branch", "--branch", branch, source, str(dest))
        return cls(dest)

    def is_repo(self) -> bool:
        """Whether the path is the top of a git working tree."""
        if not (self.path / ".git").exists():
            return False
        result = self._run("rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def fetch(self, branch: str) -> None:
        """Fetch branch from origin into refs/remotes/origin/<branch>."""
        self._run(
            "fetch", "--quiet", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}"
        )

    def rev_parse(self, ref: str) -> str | None:
        """Resolve a ref to a commit id, or None if it does not exist."""
        result = self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def commit_exists(self, rev: str) -> bool:
        """Check if a commit id exists in the repository."""
        if not _REV_RE.match(rev):
            return False
        result = self._run("cat-file", "-t", rev, check=False)
        return result.returncode == 0 and result.stdout.strip() == "commit"

    def changed_paths(self, old: str, new: str) -> list[tuple[str, str]]:
        """Return (status, path) pairs of files differing between two commits.

        Status is git's single-letter code (A, M, D, T); renames are reported
        as a delete plus an add.
        """
        result = self._run("diff", "--name-status", "--no-renames", "-z", old, new)
        fields = [f for f in result.stdout.split("\0") if f]
        return [(fields[i][0], fields[i + 1]) for i in range(0, len(fields) - 1, 2)]

    def show(self, rev: str, path: str) -> str | None:
        """Return file content at a commit, or None if the file is not there."""
        result = self._run("show", f"{rev}:{path}", check=False)
        if result.returncode == 0:
            return result.stdout
        stderr = result.stderr
        if result.returncode == 128 and ("does not exist" in stderr or "but not in" in stderr):
            return None
        raise GitError(["show", f"{rev}:{path}"], result.returncode, stderr)

    def reset_hard(self, rev: str) -> None:
        """Point the current branch and working tree at rev."""
        self._run("reset", "--quiet", "--hard", rev)

    def commit_paths(self, paths: list[str], message: str) -> str | None:
        """Stage paths and commit them. Returns the new commit or None if unchanged."""
        self._run("add", "--", *paths)
        if self._run("diff", "--cached", "--quiet", check=False).returncode == 0:
            return None
        self._run(
            "-c",
            f"user.name={COMMITTER_NAME}",
            "-c",
            f"user.email={COMMITTER_EMAIL}",
            "commit",
            "--quiet",
            "--no-verify",
            "-m",
            message,
        )
        return self.rev_parse("HEAD")


__all__ = ["GitError", "GitRepo", "run_git"]
