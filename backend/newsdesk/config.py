"""
Application configuration using Pydantic Settings.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from newsdesk.core.retry import RetryPolicy
from newsdesk.core.schedule import parse_time_of_day, parse_weekday


class RetryPolicySettings(BaseSettings):
    """Bounded exponential back-off for one call site."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=300.0, ge=0.0)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_seconds,
            multiplier=self.multiplier,
            max_delay=self.max_delay_seconds,
        )


class EnrichmentRetrySettings(RetryPolicySettings):
    model_config = SettingsConfigDict(env_prefix="ENRICHMENT_RETRY_", extra="ignore")

    max_attempts: int = Field(default=2, ge=1)
    base_delay_seconds: float = Field(default=2.0, ge=0.0)


class DeliveryRetrySettings(RetryPolicySettings):
    model_config = SettingsConfigDict(env_prefix="DELIVERY_RETRY_", extra="ignore")

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=5.0, ge=0.0)


class SchedulerRetrySettings(RetryPolicySettings):
    """Cycle-level retries, spread over scheduler ticks."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_RETRY_", extra="ignore")

    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = Field(default=60.0, ge=0.0)
    max_delay_seconds: float = Field(default=3600.0, ge=0.0)


class ScrapePageConfig(BaseModel):
    """One listing page for the scraping connector."""

    name: str
    url: str
    item_selector: str
    title_selector: str = "a"
    link_selector: str = "a"
    date_selector: Optional[str] = None
    text_selector: Optional[str] = None


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Newsdesk"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./newsdesk.db",
        description="Async database URL (SQLAlchemy format)",
    )
    persist_timeout_seconds: float = Field(default=10.0, gt=0)

    # Retention
    retention_days: int = Field(default=90, ge=1)

    # Enrichment
    enrichment_enabled: bool = Field(default=True)
    anthropic_api_key: Optional[str] = Field(default=None)
    openai_api_key: Optional[str] = Field(default=None)
    enrichment_model: Optional[str] = Field(
        default=None,
        description="Override the provider's default model",
    )
    enrichment_timeout_seconds: float = Field(default=30.0, gt=0)
    enrichment_max_concurrency: int = Field(default=5, ge=1)
    enrichment_stale_after_days: int = Field(
        default=30,
        ge=1,
        description="Re-enrich a re-sighted article when its enrichment is older than this",
    )
    summary_max_words: int = Field(default=120, ge=10)

    # Sources
    arxiv_enabled: bool = Field(default=True)
    arxiv_categories: list[str] = Field(default=["cs.AI", "cs.LG", "cs.CL"])
    arxiv_max_results: int = Field(default=100, ge=1, le=1000)

    feeds_enabled: bool = Field(default=True)
    feed_urls: list[str] = Field(
        default=[
            "https://huggingface.co/papers/rss",
            "https://openai.com/blog/rss.xml",
            "https://blog.google/technology/ai/rss/",
        ],
    )
    feed_max_items: int = Field(default=50, ge=1)

    scrape_enabled: bool = Field(default=False)
    scrape_pages: list[ScrapePageConfig] = Field(default_factory=list)

    fetch_timeout_seconds: float = Field(default=20.0, gt=0)
    connector_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Wall-clock budget for one connector within a cycle",
    )
    max_concurrent_fetches: int = Field(default=4, ge=1)
    collection_lookback_hours: int = Field(default=48, ge=1)

    # Scheduler
    collection_interval_minutes: int = Field(default=60, ge=1)
    daily_digest_enabled: bool = Field(default=True)
    daily_digest_time: str = Field(default="07:30")
    weekly_digest_enabled: bool = Field(default=True)
    weekly_digest_day: str = Field(default="monday")
    weekly_digest_time: str = Field(default="08:00")
    run_on_startup: bool = Field(default=False)
    scheduler_tick_seconds: int = Field(default=60, ge=1)

    # Delivery
    smtp_host: Optional[str] = Field(default=None)
    smtp_port: int = Field(default=587)
    smtp_user: Optional[str] = Field(default=None)
    smtp_password: Optional[str] = Field(default=None)
    smtp_use_tls: bool = Field(default=True)
    email_from: str = Field(default="newsdesk@localhost")
    digest_recipients: list[str] = Field(default_factory=list)
    digest_max_articles: int = Field(default=25, ge=1)
    digest_send_empty: bool = Field(default=False)
    send_timeout_seconds: float = Field(default=30.0, gt=0)

    # Retry policies (nested)
    enrichment_retry: EnrichmentRetrySettings = Field(default_factory=EnrichmentRetrySettings)
    delivery_retry: DeliveryRetrySettings = Field(default_factory=DeliveryRetrySettings)
    scheduler_retry: SchedulerRetrySettings = Field(default_factory=SchedulerRetrySettings)

    @field_validator("daily_digest_time", "weekly_digest_time")
    @classmethod
    def validate_time_of_day(cls, v: str) -> str:
        parse_time_of_day(v)
        return v

    @field_validator("weekly_digest_day")
    @classmethod
    def validate_weekday(cls, v: str) -> str:
        parse_weekday(v)
        return v

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
