"""Configuration settings for chr_installer.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


def _default_cache_dir() -> Path:
    """Return the default image cache directory."""
    return Path("/var/cache/chr-installer/images")


def _default_work_dir() -> Path:
    """Return the default scratch directory for one installation."""
    return Path("/tmp/chr-installer")


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the CHR_INSTALL_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHR_INSTALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Directory holding extracted CHR images, one per version",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Scratch directory for the container image and staging mount",
    )
    log_file: Path = Field(
        default=Path("/var/log/chr-installer.log"),
        description="Append-only installation log",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Image source
    routeros_version: str = Field(
        default="7.19.4",
        description="RouterOS CHR version to install",
    )
    download_base_url: str = Field(
        default="https://download.mikrotik.com/routeros",
        description="Base URL of the CHR image archive",
    )

    # Download policy
    download_timeout: int = Field(
        default=300,
        ge=5,
        description="Timeout for a single download attempt (seconds)",
    )
    download_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Download attempts before giving up",
    )
    download_retry_delay: float = Field(
        default=5.0,
        ge=0,
        description="Delay between download attempts (seconds)",
    )

    # Block device slot
    nbd_device: str = Field(
        default="/dev/nbd0",
        description="Network block device node used to attach the image",
    )
    nbd_max_partitions: int = Field(
        default=8,
        ge=1,
        description="max_part parameter for the nbd kernel module",
    )
    partition_poll_attempts: int = Field(
        default=10,
        ge=1,
        description="Polls for partition nodes after attaching",
    )
    partition_poll_interval: float = Field(
        default=0.5,
        ge=0,
        description="Delay between partition polls (seconds)",
    )

    # Image layout
    data_partition: int = Field(
        default=2,
        ge=1,
        description="Partition holding the RouterOS data filesystem",
    )
    image_size_bytes: int | None = Field(
        default=None,
        ge=GIB,
        description="Grow the image to this size (defaults to the target disk size)",
    )

    # Validation thresholds
    min_disk_bytes: int = Field(
        default=GIB,
        ge=GIB,
        description="Smallest accepted target disk",
    )
    min_password_length: int = Field(
        default=8,
        ge=1,
        description="Minimum admin password length",
    )
    min_memory_bytes: int = Field(
        default=512 * MIB,
        ge=0,
        description="Available memory required for the in-memory staging area",
    )

    # First-boot configuration
    dns_servers: list[str] = Field(
        default_factory=lambda: ["1.1.1.1", "1.0.0.1"],
        description="DNS servers configured on the router",
    )
    router_interface: str = Field(
        default="ether1",
        description="Router-side interface receiving the host address",
    )

    # Write strategy
    direct_io: bool = Field(
        default=True,
        description="Use O_DIRECT for forced-mode writes",
    )
    forced_presync: bool = Field(
        default=True,
        description="Issue an emergency sync before a forced-mode write",
    )
    reboot_delay: int = Field(
        default=10,
        ge=0,
        description="Countdown before rebooting (seconds)",
    )


def get_settings() -> Settings:
    """Get the application settings.

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


__all__ = ["GIB", "MIB", "Settings", "get_settings", "print_settings_json"]
