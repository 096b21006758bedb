"""Rust toolchain mirroring module.

This module handles:
- Fetching and parsing channel manifests
- Downloading components for the configured platforms
- Mirroring rustup-init installers
- Retention of dated channel releases
"""

from rustmirror.toolchain.platforms import PLATFORMS_UNIX, PLATFORMS_WINDOWS

__all__ = ["PLATFORMS_UNIX", "PLATFORMS_WINDOWS"]

# Lazy imports for submodules to avoid circular imports with config
# Access via rustmirror.toolchain.service, etc.
