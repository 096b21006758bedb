"""rustmirror - Offline mirror of the Rust toolchain and crates.io.

This package synchronizes rustup release channels, rustup-init installers,
the crates.io index and crate archives into a local directory tree, and
serves that tree to rustup and cargo clients.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
