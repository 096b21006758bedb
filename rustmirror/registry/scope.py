"""Scope manifests from a ``cargo vendor`` directory.

``cargo vendor`` writes one subdirectory per resolved package, each holding
the package's normalized ``Cargo.toml``. The (name, version) pairs found
there restrict an archive sync to exactly what a project needs.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from rustmirror.registry.archives import ScopeManifest


class ScopeParseError(Exception):
    """Raised when a vendor directory cannot be turned into a scope."""

    def __init__(self, path: Path, message: str, code: str = "scope_parse_error") -> None:
        """Initialize ScopeParseError.

        Args:
            path: Offending file or directory.
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(f"{path}: {message}")
        self.path = path
        self.code = code


def _package_key(cargo_toml: Path) -> tuple[str, str]:
    if not cargo_toml.is_file():
        raise ScopeParseError(cargo_toml.parent, "no Cargo.toml")
    try:
        data = tomllib.loads(cargo_toml.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise ScopeParseError(cargo_toml, f"unreadable: {e}") from e

    package = data.get("package")
    if not isinstance(package, dict):
        raise ScopeParseError(cargo_toml, "missing [package] table")
    name = package.get("name")
    version = package.get("version")
    if not isinstance(name, str) or not name:
        raise ScopeParseError(cargo_toml, "missing package.name")
    if not isinstance(version, str) or not version:
        raise ScopeParseError(cargo_toml, "missing package.version")
    return (name, version)


def resolve_scope(vendor_dir: Path) -> ScopeManifest:
    """Read the (name, version) pairs of a vendor directory.

    Args:
        vendor_dir: Output directory of ``cargo vendor``.

    Returns:
        The set of vendored packages.

    Raises:
        ScopeParseError: If the directory is missing, any package is
            malformed, or no package is found.
    """
    if not vendor_dir.is_dir():
        raise ScopeParseError(vendor_dir, "not a directory")

    pairs = {
        _package_key(entry / "Cargo.toml")
        for entry in sorted(vendor_dir.iterdir())
        if entry.is_dir() and not entry.name.startswith(".")
    }
    if not pairs:
        raise ScopeParseError(vendor_dir, "no vendored packages found")
    return frozenset(pairs)


__all__ = ["ScopeManifest", "ScopeParseError", "resolve_scope"]
