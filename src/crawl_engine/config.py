"""Centralized configuration for crawl-engine using Pydantic Settings."""

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_USER_AGENT = "DocuSynth-Crawler/1.0 (+https://docusynth.ai/bot)"


class Settings(BaseSettings):
    """Strictly typed configuration loaded from environment variables.

    Values are validated at startup. Job tunables here are only defaults;
    each job stores its own copy once created.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",  # Ignore extra env vars not defined in model
    )

    # Storage
    crawl_db_path: Path = Field(
        default=Path("crawl_data/crawl.sqlite"),
        description="SQLite file holding jobs, queue, pages, caches and run history",
    )

    # HTTP/Request settings
    http_timeout: int = Field(default=30, ge=1, description="HTTP request timeout in seconds")
    crawler_user_agent: str = Field(default=DEFAULT_USER_AGENT, description="Identifying crawler user agent")

    # Robots / retry policy
    robots_cache_ttl_hours: int = Field(default=24, ge=1, description="Hours a cached robots.txt stays valid")
    max_fetch_attempts: int = Field(default=3, ge=1, description="Fetch attempts before a URL is marked failed")
    retry_backoff_base_seconds: float = Field(
        default=2.0, gt=1.0, description="Base of the exponential retry backoff (seconds ** attempts)"
    )

    # Job defaults
    default_max_pages: int = Field(default=100, ge=1, description="Default page budget per job")
    default_max_depth: int = Field(default=3, ge=0, description="Default maximum link depth")
    default_request_delay_ms: int = Field(default=1000, ge=0, description="Default politeness delay")
    default_max_concurrent: int = Field(default=1, ge=1, description="Default per-domain fetch concurrency")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Run schedule-enabled jobs automatically")
    scheduler_poll_seconds: int = Field(default=60, ge=1, description="Seconds between schedule checks")

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")

    @model_validator(mode="after")
    def _check_user_agent(self) -> "Settings":
        if not self.crawler_user_agent.strip():
            raise ValueError("CRAWLER_USER_AGENT must not be empty")
        return self

    def get_default_job_limits(self) -> dict[str, int]:
        """Tunables applied to jobs created without explicit values."""
        return {
            "max_pages": self.default_max_pages,
            "max_depth": self.default_max_depth,
            "request_delay_ms": self.default_request_delay_ms,
            "max_concurrent": self.default_max_concurrent,
        }
