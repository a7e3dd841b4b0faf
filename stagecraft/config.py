"""Configuration settings for stagecraft.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> Path:
    """Return the default directory for stage environments."""
    return Path.home() / ".cache" / "stagecraft" / "work"


def _default_cache_dir() -> Path:
    """Return the default directory for cook cache layers."""
    return Path.home() / ".cache" / "stagecraft" / "layers"


def _default_images_dir() -> Path:
    """Return the default directory holding local base image roots."""
    return Path.home() / ".local" / "share" / "stagecraft" / "images"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "stagecraft" / "db.sqlite"
    return f"sqlite:///{db_path}"


def _default_install_command() -> list[str]:
    """Return the default interpreted-dependency install command."""
    return [
        "python3",
        "-m",
        "pip",
        "install",
        "--no-cache-dir",
        "--target",
        "{root}/usr/local/lib/stagecraft/site-packages",
        "-r",
        "{requirements}",
    ]


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STAGECRAFT_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGECRAFT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-run stage environments",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for cook cache layers",
    )
    images_dir: Path = Field(
        default_factory=_default_images_dir,
        description="Directory of local base image roots, one per image reference",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Stage behaviour
    keep_stages: bool = Field(
        default=False,
        description="Keep stage directories after their consumers finish",
    )
    strict_base_images: bool = Field(
        default=False,
        description="Fail when an external base image has no local root",
    )
    install_command: list[str] = Field(
        default_factory=_default_install_command,
        description="Command used by install operations ({root}, {requirements})",
    )

    # Timeouts (in seconds)
    command_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single stage command",
    )
    lock_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout waiting for a cook cache lock",
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
