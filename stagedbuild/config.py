"""Configuration settings for stagedbuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default dependency cache directory."""
    return Path.home() / ".cache" / "stagedbuild" / "deps"


def _default_artifacts_dir() -> Path:
    """Return the default executable artifacts directory."""
    return Path.home() / ".local" / "share" / "stagedbuild" / "artifacts"


def _default_images_dir() -> Path:
    """Return the default runtime image bundle directory."""
    return Path.home() / ".local" / "share" / "stagedbuild" / "images"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "stagedbuild" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STAGEDBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGEDBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the content-addressed dependency cache",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for executable artifacts",
    )
    images_dir: Path = Field(
        default_factory=_default_images_dir,
        description="Root directory for runtime image bundles",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Directory for build workspaces (uses system default if not set)",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    keep_workspace: bool = Field(
        default=False,
        description="Keep build workspaces after a stage finishes (for debugging)",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for each toolchain invocation",
    )
    lock_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout for acquiring a build lock",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


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


__all__ = ["Settings", "get_settings", "print_settings_json"]
