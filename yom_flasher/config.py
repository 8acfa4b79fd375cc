"""Configuration settings for yom_flasher.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HELPER_SOCKET = Path("/tmp/yom-flasher-helper.sock")


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the YOM_FLASHER_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="YOM_FLASHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Privileged helper channel
    helper_socket_path: Path = Field(
        default=DEFAULT_HELPER_SOCKET,
        description="Unix socket the privileged helper listens on",
    )
    helper_socket_mode: int = Field(
        default=0o666,
        ge=0,
        le=0o777,
        description="Permission bits applied to the helper socket",
    )
    ipc_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for a helper response",
    )
    reconnect_interval: float = Field(
        default=3.0,
        gt=0,
        description="Seconds between helper reconnection attempts",
    )

    # Device operations
    flash_block_size: str = Field(
        default="4M",
        pattern=r"^\d+[KMG]?$",
        description="dd block size used when flashing",
    )
    default_partition_number: int = Field(
        default=3,
        ge=0,
        description="Partition to extend after flashing (0 = last partition)",
    )
    command_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for partitioning/filesystem commands (seconds)",
    )
    extra_command_dirs: list[Path] = Field(
        default_factory=list,
        description="Directories checked before the built-in tool locations",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
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


__all__ = ["DEFAULT_HELPER_SOCKET", "Settings", "get_settings", "print_settings_json"]
