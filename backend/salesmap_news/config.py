from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised when required provider configuration is missing."""


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "World Sales Map News"
    app_env: str = "development"
    api_prefix: str = "/api"

    backend_host: str = "0.0.0.0"
    backend_port: int = 4000

    google_cse_api_key: str = ""
    google_cse_id: str = ""
    google_cse_id_strict: str = ""
    google_cse_endpoint: str = "https://www.googleapis.com/customsearch/v1"
    request_timeout_seconds: int = Field(default=20, ge=5, le=120)

    news_search_template: str = (
        '"<firm name>" ("fund" OR "funds" OR "raises" OR "closed" OR "deal" OR '
        '"acquisition" OR "promotes" OR "hire" OR "joins")'
    )
    news_date_restrict: str = "d1"
    news_sort: str = "date"
    news_gl: str = "us"
    news_hl: str = "en"
    news_lr: str = ""
    news_safe: str = "active"
    news_exclude_terms: str = "job opening,apply now,careers,webinar,sponsored"
    news_allowlist_sites: str = ""
    news_blocked_sites: str = (
        "linkedin.com/jobs,indeed.com,glassdoor.com,ziprecruiter.com,"
        "lever.co,greenhouse.io,workday.com"
    )

    news_results_per_firm: int = Field(default=3, ge=1, le=10)
    news_firms_per_batch: int = Field(default=5, ge=1, le=100)
    news_snapshot_ttl_seconds: int = Field(default=24 * 60 * 60, ge=60)
    news_job_ttl_seconds: int = Field(default=24 * 60 * 60, ge=60)
    news_refresh_cooldown_seconds: int = Field(default=0, ge=0)
    news_recency_hours: int = Field(default=24, ge=1)
    news_max_error_entries: int = Field(default=500, ge=1)

    news_request_interval_ms: int = Field(default=500, ge=0)
    news_request_max_retries: int = Field(default=3, ge=0, le=10)
    news_request_backoff_ms: int = Field(default=15000, ge=0)
    news_request_jitter_ms: int = Field(default=250, ge=0)

    store_backend: str = Field(default="redis", pattern="^(redis|sql|memory)$")
    redis_url: str = "redis://localhost:6379/0"
    database_url: str = "postgresql+psycopg://salesmap:salesmap@db:5432/salesmap_news"
    store_key_prefix: str = "news"

    # Root-level default: <repo>/data/news_firms.csv
    firms_csv_path: str = str(Path(__file__).resolve().parents[2] / "data" / "news_firms.csv")

    scheduler_enabled: bool = False
    refresh_interval_seconds: int = Field(default=300, ge=30)

    cors_origins: str = (
        "http://localhost:3000,http://127.0.0.1:3000,"
        "http://localhost:5173,http://127.0.0.1:5173"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def exclude_terms_list(self) -> list[str]:
        return _split_csv(self.news_exclude_terms)

    @property
    def allowlist_sites_list(self) -> list[str]:
        return _split_csv(self.news_allowlist_sites)

    @property
    def blocked_sites_list(self) -> list[str]:
        return _split_csv(self.news_blocked_sites)

    @property
    def job_ttl_seconds(self) -> int:
        # A job record must outlive the snapshot it points at.
        return max(self.news_snapshot_ttl_seconds, self.news_job_ttl_seconds)


def validate_news_config(settings: Settings) -> None:
    missing = []
    if not settings.google_cse_api_key:
        missing.append("GOOGLE_CSE_API_KEY")
    if not settings.google_cse_id and not settings.google_cse_id_strict:
        missing.append("GOOGLE_CSE_ID")

    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
