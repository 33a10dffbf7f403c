"""Configuration models for the news pipeline."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, List, Optional, Set, Tuple

from pydantic import (
    BaseModel,
    Field,
    PositiveInt,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# Each enrichment attempt makes at most three external calls: content fetch,
# sentiment classification and summarization.
CALLS_PER_ITEM = 3


class FeedSchedule(BaseModel):
    """Represents a periodic feed collection job configuration."""

    source: str = Field(..., description="Feed source identifier (e.g. newsdata).")
    query: str = Field(..., description="Search query sent to the feed.")
    interval_minutes: PositiveInt = Field(..., description="Collection interval in minutes.")
    enabled: bool = Field(True, description="Whether the schedule is active.")

    @field_validator("source")
    @classmethod
    def _normalize_source(cls, value: str) -> str:
        source = value.strip().lower()
        if not source:
            raise ValueError("source must not be blank.")
        return source

    @field_validator("query")
    @classmethod
    def _normalize_query(cls, value: str) -> str:
        query = value.strip()
        if not query:
            raise ValueError("query must not be blank.")
        return query


class Settings(BaseSettings):
    """Environment configuration shared by producer, consumer and refresher."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    redis_url: str = Field(..., alias="INGESTION_REDIS_URL", description="Celery broker/backend Redis DSN.")
    postgres_dsn: str = Field(..., alias="POSTGRES_DSN", description="Durable store connection string.")

    # Feed source
    feed_api_key: Optional[SecretStr] = Field(None, alias="FEED_API_KEY", description="News feed API key.")
    feed_endpoint: str = Field(
        "https://newsdata.io/api/1/latest",
        alias="FEED_ENDPOINT",
        description="News feed endpoint",
    )
    feed_timeout_seconds: PositiveInt = Field(10, alias="FEED_TIMEOUT_SECONDS", description="Feed request timeout (s)")
    feed_max_pages: PositiveInt = Field(10, alias="FEED_MAX_PAGES", description="Pages fetched per run at most")
    feed_language: str = Field("en", alias="FEED_LANGUAGE", description="Feed language filter")
    collection_schedules: List[FeedSchedule] = Field(
        default_factory=list,
        alias="COLLECTION_SCHEDULES",
        description="JSON array of feed schedules.",
    )

    # Enrichment consumer
    enrich_batch_size: PositiveInt = Field(5, alias="ENRICH_BATCH_SIZE", description="Items per consumer run.")
    enrich_max_failures: PositiveInt = Field(
        5,
        alias="ENRICH_MAX_FAILURES",
        description="Failed attempts before an item is quarantined.",
    )
    enrich_lease_seconds: PositiveInt = Field(
        600,
        alias="ENRICH_LEASE_SECONDS",
        description="How long a consumer run holds an item it claimed.",
    )
    enrich_interval_minutes: PositiveInt = Field(1, alias="ENRICH_INTERVAL_MINUTES", description="Consumer interval.")
    external_call_budget: PositiveInt = Field(
        50,
        alias="EXTERNAL_CALL_BUDGET",
        description="External calls one consumer invocation may make.",
    )
    content_fetch_timeout_seconds: PositiveInt = Field(
        10,
        alias="CONTENT_FETCH_TIMEOUT_SECONDS",
        description="Article body fetch timeout (s).",
    )
    content_max_chars: PositiveInt = Field(10 * 1024, alias="CONTENT_MAX_CHARS", description="Extracted body cap.")
    content_min_chars: PositiveInt = Field(100, alias="CONTENT_MIN_CHARS", description="Shortest usable body.")

    # Cache store / refresher
    cache_redis_url: Optional[str] = Field(
        None,
        alias="CACHE_REDIS_URL",
        description="Redis DSN for the read snapshot (defaults to INGESTION_REDIS_URL).",
    )
    cache_snapshot_key: str = Field("news:snapshot", alias="CACHE_SNAPSHOT_KEY", description="Snapshot cache key.")
    cache_ttl_seconds: PositiveInt = Field(3600, alias="CACHE_TTL_SECONDS", description="Snapshot key TTL.")
    cache_max_staleness_seconds: PositiveInt = Field(
        300,
        alias="CACHE_MAX_STALENESS_SECONDS",
        description="Snapshots older than this are served from the durable store.",
    )
    snapshot_limit: PositiveInt = Field(100, alias="SNAPSHOT_LIMIT", description="Items kept in the snapshot.")
    snapshot_pending_window_minutes: PositiveInt = Field(
        60,
        alias="SNAPSHOT_PENDING_WINDOW_MINUTES",
        description="Pending items updated within this window are included.",
    )
    refresh_interval_minutes: PositiveInt = Field(5, alias="REFRESH_INTERVAL_MINUTES", description="Refresher interval.")

    # Runtime
    structlog_level: str = Field("INFO", alias="STRUCTLOG_LEVEL", description="Log level.")
    log_json: bool = Field(False, alias="LOG_JSON", description="Emit logs as JSON lines.")
    celery_worker_concurrency: PositiveInt = Field(
        1,
        alias="CELERY_WORKER_CONCURRENCY",
        description="Celery worker concurrency.",
    )
    celery_task_soft_time_limit: PositiveInt = Field(
        240,
        alias="CELERY_TASK_SOFT_TIME_LIMIT",
        description="Celery task soft time limit (s).",
    )

    @field_validator("collection_schedules", mode="before")
    @classmethod
    def _parse_collection_schedules(cls, value: Any) -> List[Any]:
        if value in (None, "", []):
            return []
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("COLLECTION_SCHEDULES must be a JSON array.") from exc
            return parsed
        if isinstance(value, list):
            return value
        raise ValueError("COLLECTION_SCHEDULES must be a list.")

    @field_validator("collection_schedules")
    @classmethod
    def _validate_unique_schedule(cls, value: List[FeedSchedule]) -> List[FeedSchedule]:
        seen: Set[Tuple[str, str]] = set()
        for schedule in value:
            key = (schedule.source, schedule.query.lower())
            if key in seen:
                raise ValueError(f"Duplicate schedule entry: {schedule.source}/{schedule.query}")
            seen.add(key)
        return value

    @field_validator("postgres_dsn")
    @classmethod
    def _validate_postgres_dsn(cls, value: str) -> str:
        if "://" not in value:
            raise ValueError("POSTGRES_DSN must be a valid DSN string.")
        return value

    @field_validator("cache_snapshot_key")
    @classmethod
    def _validate_cache_key(cls, value: str) -> str:
        key = value.strip()
        if not key:
            raise ValueError("CACHE_SNAPSHOT_KEY must not be blank.")
        return key

    @model_validator(mode="after")
    def _validate_call_budget(self) -> "Settings":
        if self.enrich_batch_size * CALLS_PER_ITEM > self.external_call_budget:
            raise ValueError(
                f"ENRICH_BATCH_SIZE={self.enrich_batch_size} needs up to "
                f"{self.enrich_batch_size * CALLS_PER_ITEM} external calls, "
                f"over EXTERNAL_CALL_BUDGET={self.external_call_budget}."
            )
        return self

    @property
    def snapshot_redis_url(self) -> str:
        return self.cache_redis_url or self.redis_url


@lru_cache()
def get_settings() -> Settings:
    """Return the Settings instance built from the environment."""
    try:
        return Settings()
    except ValidationError as exc:
        raise RuntimeError(f"Environment validation failed: {exc}") from exc


def reset_settings_cache() -> None:
    """Clear the Settings LRU cache (for tests)."""
    get_settings.cache_clear()  # type: ignore[attr-defined]
