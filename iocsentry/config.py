"""
IOCSentry Configuration Module

Centralized configuration management using pydantic-settings.
Loads settings from environment variables and .env files.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Find the project root (where .env is located)
_PROJECT_ROOT = Path(__file__).parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

INDICATOR_TYPES = ("hash", "ip", "domain", "url")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE) if _ENV_FILE.exists() else ".env",
        env_file_encoding="utf-8",
        env_prefix="IOCSENTRY_",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Server Configuration
    # ==========================================================================
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")

    # ==========================================================================
    # VirusTotal Credentials
    # ==========================================================================
    virustotal_api_keys: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma separated VirusTotal API keys (duplicates dropped)",
    )
    virustotal_base_url: str = Field(
        default="https://www.virustotal.com/api/v3",
        description="VirusTotal API v3 base URL",
    )

    # ==========================================================================
    # Quota and Rate Limits
    # ==========================================================================
    key_quota_per_window: int = Field(
        default=4,
        ge=1,
        description="Requests each key may issue per quota window",
    )
    key_window_seconds: int = Field(
        default=60,
        ge=1,
        description="Length of a key's quota window (seconds)",
    )
    type_rate_limits: dict[str, int] = Field(
        default_factory=lambda: {t: 0 for t in INDICATOR_TYPES},
        description="Requests per window for each indicator type (0 = unlimited)",
    )
    rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        description="Window used by the per-type throttle (seconds)",
    )
    default_rate_limit_cooldown: int = Field(
        default=60,
        description="Cooldown applied on a 429 without reset headers (seconds)",
    )

    # ==========================================================================
    # Lookup Policy
    # ==========================================================================
    cache_ttl_seconds: int = Field(
        default=3600,  # 1 hour
        gt=0,
        description="TTL for resolved lookup records (seconds)",
    )
    fallback_ttl_seconds: int = Field(
        default=900,  # 15 minutes
        gt=0,
        description="TTL for 'unknown' fallback records written after provider failures",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for each provider request (seconds)",
    )
    max_concurrent_lookups: int = Field(
        default=5,
        ge=1,
        description="Maximum concurrent lookups within a batch",
    )
    max_batch_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of raw indicators accepted per submission",
    )

    # ==========================================================================
    # Persistence
    # ==========================================================================
    database_path: Path = Field(
        default=Path("data/iocsentry.db"),
        description="SQLite database holding lookup records",
    )

    # ==========================================================================
    # Logging Configuration
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Log output format",
    )

    @field_validator("virustotal_api_keys", mode="before")
    @classmethod
    def split_keys(cls, v: str | list[str] | None) -> list[str]:
        """Accept a comma separated string and drop blanks and duplicates."""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        keys: list[str] = []
        for key in v:
            key = str(key).strip()
            if key and key not in keys:
                keys.append(key)
        return keys

    @field_validator("type_rate_limits", mode="after")
    @classmethod
    def fill_rate_limits(cls, v: dict[str, int]) -> dict[str, int]:
        """Ensure every indicator type has a throttle entry."""
        limits = {t: 0 for t in INDICATOR_TYPES}
        for key, value in v.items():
            key = key.strip().lower()
            if key not in limits:
                raise ValueError(f"Unknown indicator type in rate limits: {key}")
            limits[key] = max(0, int(value))
        return limits

    @field_validator("database_path", mode="before")
    @classmethod
    def ensure_path(cls, v: str | Path) -> Path:
        """Ensure database_path is a Path object."""
        return Path(v) if isinstance(v, str) else v

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def has_virustotal(self) -> bool:
        """Check if at least one VirusTotal API key is configured."""
        return bool(self.virustotal_api_keys)

    def ensure_database_dir(self) -> Path:
        """Create the database's parent directory if it doesn't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        return self.database_path


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience alias
settings = get_settings()
