"""Domain DTOs for the ingestion side of the pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator


class FeedItemDTO(BaseModel):
    """Normalized representation of one candidate item from a feed page."""

    id: str = Field(..., min_length=1, max_length=255, description="Stable dedup key from the feed")
    source_url: HttpUrl
    title: str = Field(..., min_length=1)
    published_at: datetime
    description: Optional[str] = None
    source_name: Optional[str] = Field(default=None, max_length=128)
    image_url: Optional[str] = None
    language: Optional[str] = Field(default=None, max_length=8)

    @field_validator("id", "title")
    @classmethod
    def _strip(cls, v: str) -> str:
        s = v.strip()
        if not s:
            raise ValueError("must not be blank")
        return s

    @field_validator("title")
    @classmethod
    def _cap_title(cls, v: str) -> str:
        return v[:512]

    @field_validator("published_at")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class FeedPage(BaseModel):
    """One page of normalized feed items plus the token for the next page."""

    items: List[FeedItemDTO] = Field(default_factory=list)
    next_page: Optional[str] = None
    skipped: int = Field(0, ge=0, description="Raw entries dropped during normalization")


class ItemRecord(BaseModel):
    """Detached, read-only view of one ``news_items`` row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    source_url: str
    title: str
    published_at: datetime
    description: Optional[str] = None
    source_name: Optional[str] = None
    image_url: Optional[str] = None
    content: Optional[str] = None
    sentiment: Optional[str] = None
    summary: Optional[str] = None
    needs_sentiment: bool
    needs_summary: bool
    failure_count: int
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    updated_at: Optional[datetime] = None
