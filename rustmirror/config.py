"""Configuration settings for rustmirror.

Uses pydantic-settings for config parsing from CLI overrides, environment
variables, the mirror's own ``mirror.toml`` and defaults, in that order of
precedence.
"""

import tomllib
from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from rustmirror import __version__
from rustmirror.toolchain.platforms import PLATFORMS_UNIX, PLATFORMS_WINDOWS

# Name of the per-mirror configuration file
CONFIG_FILENAME = "mirror.toml"

# Name of the per-mirror state database
DB_FILENAME = "mirror.db"

DEFAULT_RUSTUP_SOURCE = "https://static.rust-lang.org"
DEFAULT_CRATES_INDEX = "https://github.com/rust-lang/crates.io-index"
DEFAULT_CRATES_SOURCE = "https://static.crates.io/crates/{crate}/{crate}-{version}.crate"

CONFIG_TEMPLATE = """\
# rustmirror configuration.
# Environment variables (RUSTMIRROR_<KEY>) override the values below.

# Public URL clients reach this mirror at. Used in the instructions page
# and written into the registry index config.json.
# base_url = "http://mirror.example.internal:8080"

# Simultaneous downloads
concurrency = 4

# Retries per file after the first attempt
retries = 5

# Delete files no longer referenced after a successful sync
prune = true

## Rustup

rustup_enabled = true
rustup_source = "https://static.rust-lang.org"

# Platforms to mirror; all known platforms when unset.
# platforms_unix = ["x86_64-unknown-linux-gnu", "aarch64-unknown-linux-gnu"]
# platforms_windows = ["x86_64-pc-windows-msvc"]

# Dated releases to keep per channel; 0 skips the channel, unset keeps all.
keep_latest_stables = 1
keep_latest_betas = 1
keep_latest_nightlies = 1

# Specific versions to keep in addition to the channels.
# pinned_rust_versions = ["1.70.0"]

download_dev = false
download_gz = true
download_xz = true

## Crates

crates_enabled = true
crates_source_index = "https://github.com/rust-lang/crates.io-index"
crates_source_branch = "master"
crates_source = "https://static.crates.io/crates/{crate}/{crate}-{version}.crate"
"""


class ConfigError(Exception):
    """Raised when the mirror configuration is missing or invalid."""

    def __init__(self, message: str, code: str = "config_error") -> None:
        """Initialize ConfigError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


def _default_mirror_path() -> Path:
    """Return the default mirror directory."""
    return Path.home() / "rustmirror"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the RUSTMIRROR_ prefix
    and from ``mirror.toml`` when bound to a mirror with load_settings().
    """

    model_config = SettingsConfigDict(
        env_prefix="RUSTMIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    mirror_path: Path = Field(
        default_factory=_default_mirror_path,
        description="Root directory of the mirror",
    )
    base_url: str | None = Field(
        default=None,
        description="Public URL the mirror is served at (used in client instructions)",
    )
    db_url: str = Field(
        default="",
        description="Database URL for sync state (defaults to mirror.db in the mirror)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Network
    concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrent downloads",
    )
    retries: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Retries per file after the first attempt",
    )
    backoff_base: float = Field(
        default=1.0,
        ge=0,
        description="Initial retry delay in seconds",
    )
    backoff_max: float = Field(
        default=30.0,
        ge=0,
        description="Maximum retry delay in seconds",
    )
    download_timeout: int = Field(
        default=300,
        ge=10,
        description="Timeout for a single download in seconds",
    )
    user_agent: str = Field(
        default=f"rustmirror/{__version__}",
        description="User-Agent header for upstream requests",
    )

    # Sync behavior
    verify_existing: bool = Field(
        default=True,
        description="Re-hash files already on disk before trusting them",
    )
    prune: bool = Field(
        default=True,
        description="Delete files no longer referenced after a successful sync",
    )

    # Rustup
    rustup_enabled: bool = Field(default=True, description="Mirror rustup")
    rustup_source: str = Field(
        default=DEFAULT_RUSTUP_SOURCE,
        description="Upstream rustup distribution server",
    )
    platforms_unix: list[str] | None = Field(
        default=None,
        description="Unix platforms to mirror (all known when unset, none when empty)",
    )
    platforms_windows: list[str] | None = Field(
        default=None,
        description="Windows platforms to mirror (all known when unset, none when empty)",
    )
    keep_latest_stables: int | None = Field(default=None, ge=0)
    keep_latest_betas: int | None = Field(default=None, ge=0)
    keep_latest_nightlies: int | None = Field(default=None, ge=0)
    retention_max_age_days: int | None = Field(
        default=None,
        ge=1,
        description="Drop dated releases older than this many days",
    )
    pinned_rust_versions: list[str] = Field(default_factory=list)
    download_dev: bool = Field(
        default=False,
        description="Also mirror the rustc-dev component",
    )
    download_gz: bool = Field(default=True, description="Mirror .tar.gz components")
    download_xz: bool = Field(default=True, description="Mirror .tar.xz components")

    # Crates
    crates_enabled: bool = Field(default=True, description="Mirror crates.io")
    crates_source_index: str = Field(
        default=DEFAULT_CRATES_INDEX,
        description="Git URL of the upstream registry index",
    )
    crates_source_branch: str = Field(default="master")
    crates_source: str = Field(
        default=DEFAULT_CRATES_SOURCE,
        description="Crate download URL template ({crate}, {version}, {prefix}, {lowerprefix})",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Insert the mirror.toml source below environment variables."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("base_url", "rustup_source")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        """Normalize URLs so paths can be joined with a single '/'."""
        if v is None:
            return v
        return v.rstrip("/")

    @field_validator("platforms_unix")
    @classmethod
    def validate_unix_platforms(cls, v: list[str] | None) -> list[str] | None:
        """Reject platforms rustup does not publish."""
        if v is None:
            return v
        bad = [p for p in v if p not in PLATFORMS_UNIX]
        if bad:
            raise ValueError(f"unknown unix platforms: {bad}")
        return v

    @field_validator("platforms_windows")
    @classmethod
    def validate_windows_platforms(cls, v: list[str] | None) -> list[str] | None:
        """Reject platforms rustup does not publish."""
        if v is None:
            return v
        bad = [p for p in v if p not in PLATFORMS_WINDOWS]
        if bad:
            raise ValueError(f"unknown windows platforms: {bad}")
        return v

    @field_validator("crates_source")
    @classmethod
    def validate_crates_source(cls, v: str) -> str:
        """Require at least one crate marker in the download template."""
        if "{crate}" not in v and "{prefix}" not in v and "{lowerprefix}" not in v:
            # cargo appends /{crate}/{version}/download to a bare base URL
            return v.rstrip("/") + "/{crate}/{version}/download"
        return v

    @model_validator(mode="after")
    def default_db_url(self) -> "Settings":
        """Place the state database inside the mirror when not configured."""
        if not self.db_url:
            self.db_url = f"sqlite:///{self.mirror_path / DB_FILENAME}"
        return self

    @property
    def unix_platforms(self) -> list[str]:
        """Configured unix platforms, or every known one when unset."""
        if self.platforms_unix is None:
            return list(PLATFORMS_UNIX)
        return list(self.platforms_unix)

    @property
    def windows_platforms(self) -> list[str]:
        """Configured windows platforms, or every known one when unset."""
        if self.platforms_windows is None:
            return list(PLATFORMS_WINDOWS)
        return list(self.platforms_windows)


def get_settings() -> Settings:
    """Get settings from environment and defaults only.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def load_settings(mirror_path: Path, **overrides: object) -> Settings:
    """Load settings for a mirror, reading its mirror.toml if present.

    Args:
        mirror_path: Root directory of the mirror.
        **overrides: Values that take precedence over every other source;
            None values are ignored.

    Returns:
        Settings bound to the mirror.

    Raises:
        ConfigError: If mirror.toml or the environment holds invalid values.
    """
    toml_file = mirror_path / CONFIG_FILENAME

    class MirrorSettings(Settings):
        model_config = SettingsConfigDict(toml_file=toml_file)

    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return MirrorSettings(mirror_path=mirror_path, **values)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {toml_file}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration for {mirror_path}: {e}") from e


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "CONFIG_FILENAME",
    "CONFIG_TEMPLATE",
    "ConfigError",
    "DB_FILENAME",
    "Settings",
    "get_settings",
    "load_settings",
    "print_settings_json",
]
