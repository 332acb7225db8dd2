"""Configuration management for Typit."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="TYPIT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Matrix Configuration
    homeserver: str = Field(default="", description="Homeserver URL, e.g. https://matrix.org")
    username: str | None = Field(default=None, description="Login user, only used without a session record")
    password: str | None = Field(default=None, description="Login password, only used without a session record")
    device_name: str | None = Field(default=None, description="Display name of the login device")

    # Storage Configuration
    store_dir: Path = Field(default=Path(".typit"), description="Directory for session and package cache")
    session_file: Path | None = Field(default=None, description="Session record path")

    # Render Configuration
    compiler: str = Field(default="typst", description="Typst compiler executable")
    render_timeout_seconds: float = Field(default=25.0, description="Deadline for compiler output")

    # Sync Configuration
    sync_timeout_ms: int = Field(default=30_000, description="Server-side long-poll timeout")
    sync_retry_seconds: float = Field(default=1.0, description="Pause between failed sync attempts")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")

    @property
    def session_path(self) -> Path:
        if self.session_file is not None:
            return self.session_file
        return self.store_dir / "session.json"

    @property
    def package_cache_dir(self) -> Path:
        return self.store_dir / "packages"


def load_settings(env_file: Path | None = None) -> Settings:
    """Load settings from the environment and an optional dotenv file.

    Args:
        env_file: Dotenv file overriding the default ``.env`` lookup

    Returns:
        Settings instance
    """
    if env_file is not None:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()
