from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from api.models import NewsItemOut, NewsSnapshot
from api.redis_cache import RedisSnapshotCache, SnapshotCache
from enrichment.models.domain import SentimentLabel
from enrichment.state import state_of
from ingestion.db.models import JobStage
from ingestion.db.session import ensure_schema, session_scope
from ingestion.errors import PipelineError
from ingestion.models.domain import ItemRecord
from ingestion.repositories.items import JobRunRecorder, select_snapshot_rows
from ingestion.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _default_cache(settings: Settings) -> SnapshotCache:
    return RedisSnapshotCache.from_url(settings.snapshot_redis_url, ttl_seconds=settings.cache_ttl_seconds)


# Cache factory is kept pluggable for tests.
CACHE_FACTORY: Callable[[Settings], SnapshotCache] = _default_cache


def to_item_out(record: ItemRecord, max_failures: int) -> NewsItemOut:
    return NewsItemOut(
        id=record.id,
        title=record.title,
        source_url=record.source_url,
        published_at=record.published_at,
        description=record.description,
        source_name=record.source_name,
        image_url=record.image_url,
        sentiment=record.sentiment,
        summary=record.summary,
        needs_sentiment=record.needs_sentiment,
        needs_summary=record.needs_summary,
        state=state_of(record, max_failures).value,
        last_error=record.last_error,
        processed_at=record.processed_at,
    )


def _sentiment_counts(items: Iterable[NewsItemOut]) -> dict[str, int]:
    counts = {label.value: 0 for label in SentimentLabel}
    for item in items:
        if item.sentiment in counts:
            counts[item.sentiment] += 1
    return counts


def build_snapshot(session: Session, settings: Settings, *, now: datetime | None = None) -> NewsSnapshot:
    """Build the complete read snapshot from one query against the durable store."""
    generated_at = now or datetime.now(timezone.utc)
    rows = select_snapshot_rows(
        session,
        limit=settings.snapshot_limit,
        max_failures=settings.enrich_max_failures,
        updated_since=generated_at - timedelta(minutes=settings.snapshot_pending_window_minutes),
    )
    items = [to_item_out(row, settings.enrich_max_failures) for row in rows]
    return NewsSnapshot(
        items=items,
        total=len(items),
        sentiment_counts=_sentiment_counts(items),
        generated_at=generated_at,
    )


def refresh_snapshot(*, cache: SnapshotCache | None = None, now: datetime | None = None) -> int:
    """Rebuild the snapshot and replace the cache key in one write.

    Returns the number of items in the new snapshot.
    """
    settings = get_settings()
    ensure_schema()
    target = cache or CACHE_FACTORY(settings)
    trace_id = str(uuid.uuid4())

    with session_scope() as session, JobRunRecorder(
        session,
        stage=JobStage.PUBLISH,
        source="cache",
        task_name="refresh_snapshot",
        trace_id=trace_id,
    ) as job:
        snapshot = build_snapshot(session, settings, now=now)
        if not target.replace_snapshot(settings.cache_snapshot_key, snapshot.model_dump(mode="json")):
            raise PipelineError(f"could not replace cache key {settings.cache_snapshot_key}")
        job.items_processed = snapshot.total

    logger.info(
        "publish.snapshot_replaced",
        extra={
            "trace_id": trace_id,
            "key": settings.cache_snapshot_key,
            "items": snapshot.total,
            "sentiment_counts": snapshot.sentiment_counts,
        },
    )
    return snapshot.total
