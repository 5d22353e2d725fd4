"""
Configuration management for the Game Leadership Map pipeline.

Uses pydantic-settings for type-safe configuration with environment variable support.
"""

from pathlib import Path
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="POSTGRES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    user: str = "glmap"
    password: str = ""  # Required: Set POSTGRES_PASSWORD in .env
    host: str = "localhost"
    port: int = 5432
    db: str = "game_leadership_map"

    # Full URL override, e.g. DATABASE_URL=sqlite:///glmap.db
    database_url: Optional[str] = Field(default=None, validation_alias="DATABASE_URL")

    @property
    def url(self) -> str:
        """Construct database URL."""
        if self.database_url:
            return self.database_url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"


class PipelineSettings(BaseSettings):
    """Data pipeline settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Input files for the reconciliation pass
    data_dir: Path = Field(default=Path("./data"))
    papers_file: str = "chiplay_papers.json"
    papers_with_doi_file: str = "chiplay_papers_with_doi.json"
    geo_file: str = "chiplay_institutions_geo.json"
    openalex_file: str = "openalex_authorships.jsonl"

    # Static export for the map front end
    export_dir: Path = Field(default=Path("./public/data"))

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None  # e.g. LOG_FILE=logs/seed.log
    progress_every: int = 200  # lines between progress log lines


class SeedSettings(BaseSettings):
    """Retry policy and defaults for the reconciliation pass."""

    model_config = SettingsConfigDict(
        env_prefix="SEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_retries: int = 5
    backoff_step: float = 0.5  # seconds added per attempt
    backoff_max: float = 4.0  # seconds
    default_venue: str = "CHI PLAY"


class RateLimitSettings(BaseSettings):
    """Request-log based rate limits (window in minutes, max requests per window)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    submission_rate_limit_window: int = 60
    submission_rate_limit_max: int = 5
    search_rate_limit_window: int = 10
    search_rate_limit_max: int = 40

    # Fall back to the institution search limits when unset
    submitter_search_rate_limit_window: Optional[int] = None
    submitter_search_rate_limit_max: Optional[int] = None

    institution_search_result_limit: int = 10
    submitter_search_result_limit: Optional[int] = None

    @property
    def submitter_window(self) -> int:
        return self.submitter_search_rate_limit_window or self.search_rate_limit_window

    @property
    def submitter_max(self) -> int:
        return self.submitter_search_rate_limit_max or self.search_rate_limit_max

    @property
    def submitter_result_limit(self) -> int:
        return self.submitter_search_result_limit or self.institution_search_result_limit


class GeocodeSettings(BaseSettings):
    """Nominatim geocoding settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    geocode_user_agent: str = "game-leadership-map/1.0 (Nominatim usage)"
    geocode_timeout: int = 10  # seconds
    # One request per submission; raise only for offline batch lookups
    geocode_attempts: int = 1


class AdminSettings(BaseSettings):
    """Moderation settings."""

    model_config = SettingsConfigDict(
        env_prefix="ADMIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    user: str = "admin"


class Settings(BaseSettings):
    """Main settings class that combines all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    seed: SeedSettings = Field(default_factory=SeedSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    geocode: GeocodeSettings = Field(default_factory=GeocodeSettings)
    admin: AdminSettings = Field(default_factory=AdminSettings)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience function for quick access
settings = get_settings()


# =============================================================================
# Domain constants
# =============================================================================

# Sentinel order for "last" author position; sorts after typical author lists
LAST_AUTHOR_ORDER = 9999

DOI_RESOLVER_PREFIX = "https://doi.org/"

# Request-log kinds used for rate limiting
REQUEST_SUBMISSION = "submission"
REQUEST_INSTITUTION_SEARCH = "institution-search"
REQUEST_SUBMITTER_SEARCH = "submitter-search"
