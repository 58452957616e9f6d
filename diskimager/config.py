"""Configuration settings for diskimager.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "diskimager" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the DISKIMAGER_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="DISKIMAGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # External tools
    diskutil_path: str = Field(
        default="/usr/sbin/diskutil",
        description="Path to the disk-management tool",
    )
    dd_path: str = Field(
        default="/bin/dd",
        description="Path to dd (used by the dd copy backend)",
    )
    raw_device_prefix: str = Field(
        default="/dev/r",
        description="Prefix that turns a disk identifier into its raw device node",
    )

    # Copy engine
    copy_backend: Literal["native", "dd"] = Field(
        default="native",
        description="Block copy implementation",
    )
    block_size: int = Field(
        default=1024 * 1024,
        ge=512,
        description="Block size in bytes for copy operations",
    )
    progress_interval: float = Field(
        default=0.1,
        ge=0.0,
        description="Minimum seconds between progress callbacks",
    )

    # Device resolution
    allow_last_disk_fallback: bool = Field(
        default=False,
        description="Use the last listed disk when no disk matches the volume name",
    )
    disk_tool_timeout: int = Field(
        default=60,
        ge=1,
        description="Timeout in seconds for disk tool invocations",
    )
    privilege_probe_device: str = Field(
        default="/dev/disk0",
        description="Device opened to check for raw disk access",
    )

    # Image validation
    min_image_bytes: int = Field(
        default=1024 * 1024,
        ge=0,
        description="Minimum size for an image to be considered valid",
    )

    # Persistence and logging
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
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
