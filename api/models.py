from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SentimentBucket = Literal["positive", "neutral", "negative"]
ItemStateName = Literal["pending", "enriched", "quarantined"]


class NewsItemOut(BaseModel):
    id: str
    title: str
    source_url: str
    published_at: datetime
    description: str | None = None
    source_name: str | None = None
    image_url: str | None = None
    sentiment: SentimentBucket | None = None
    summary: str | None = None
    needs_sentiment: bool
    needs_summary: bool
    state: ItemStateName
    last_error: str | None = None
    processed_at: datetime | None = None


class NewsSnapshot(BaseModel):
    """Whole read-side value; the cache only ever holds one of these, replaced at once."""

    items: list[NewsItemOut] = Field(default_factory=list)
    total: int = 0
    sentiment_counts: dict[str, int] = Field(default_factory=dict)
    generated_at: datetime


class QuarantinedItemOut(BaseModel):
    id: str
    title: str
    failure_count: int
    last_error: str | None = None
    processed_at: datetime | None = None


class PipelineStats(BaseModel):
    total: int
    pending: int
    enriched: int
    quarantined: int
    quarantined_items: list[QuarantinedItemOut] = Field(default_factory=list)
