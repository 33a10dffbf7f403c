from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from enrichment.tasks import enrich as enrich_mod
from ingestion.errors import QuarantineExhausted
from ingestion.repositories.items import count_by_state, list_quarantined
from ingestion.db.models import ItemState
from ingestion.settings import Settings, get_settings
from ingestion.utils.logging import get_logger
from publish import materializer
from publish.materializer import build_snapshot

from .database import session_dependency
from .models import NewsItemOut, NewsSnapshot, PipelineStats, QuarantinedItemOut
from .redis_cache import SnapshotCache

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def cache_dependency() -> SnapshotCache:
    return materializer.CACHE_FACTORY(get_settings())


SessionDep = Annotated[Session, Depends(session_dependency)]
CacheDep = Annotated[SnapshotCache, Depends(cache_dependency)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _set_source_headers(response: Response, snapshot: NewsSnapshot, *, source: str, status: str) -> None:
    response.headers["X-Data-Source"] = source
    response.headers["X-Cache-Status"] = status
    response.headers["X-Last-Updated"] = _as_utc(snapshot.generated_at).isoformat()


def _load_cached(cache: SnapshotCache, key: str) -> NewsSnapshot | None:
    raw = cache.read_snapshot(key)
    if raw is None:
        return None
    try:
        return NewsSnapshot.model_validate(raw)
    except ValidationError:
        logger.warning("read.cache_invalid", extra={"key": key})
        return None


def refill_cache(cache: SnapshotCache, key: str, snapshot: NewsSnapshot) -> bool:
    """Write ``snapshot`` unless the cache already holds one at least as new."""
    current = _load_cached(cache, key)
    if current is not None and _as_utc(current.generated_at) >= _as_utc(snapshot.generated_at):
        logger.info(
            "read.refill_skipped",
            extra={"key": key, "cached_at": _as_utc(current.generated_at).isoformat()},
        )
        return False
    return cache.replace_snapshot(key, snapshot.model_dump(mode="json"))


@router.get("/news", response_model=NewsSnapshot)
def read_news_route(
    response: Response,
    background_tasks: BackgroundTasks,
    session: SessionDep,
    cache: CacheDep,
    settings: SettingsDep,
) -> NewsSnapshot:
    now = datetime.now(timezone.utc)
    key = settings.cache_snapshot_key
    cached = _load_cached(cache, key)
    status = "MISS"
    if cached is not None:
        age = now - _as_utc(cached.generated_at)
        if age <= timedelta(seconds=settings.cache_max_staleness_seconds):
            _set_source_headers(response, cached, source="cache", status="HIT")
            return cached
        status = "STALE"

    try:
        snapshot = build_snapshot(session, settings, now=now)
    except SQLAlchemyError as exc:
        if cached is None:
            logger.error("read.durable_failed", extra={"error": str(exc)})
            raise HTTPException(status_code=503, detail="News store unavailable") from exc
        logger.warning("read.serving_stale", extra={"error": str(exc)})
        _set_source_headers(response, cached, source="cache", status="STALE")
        return cached

    background_tasks.add_task(refill_cache, cache, key, snapshot)
    logger.info("read.fallback", extra={"cache_status": status, "items": snapshot.total})
    _set_source_headers(response, snapshot, source="durable", status=status)
    return snapshot


@router.get("/pipeline/stats", response_model=PipelineStats)
def pipeline_stats_route(session: SessionDep, settings: SettingsDep) -> PipelineStats:
    counts = count_by_state(session, max_failures=settings.enrich_max_failures)
    quarantined = list_quarantined(session, max_failures=settings.enrich_max_failures)
    return PipelineStats(
        total=sum(counts.values()),
        pending=counts[ItemState.PENDING],
        enriched=counts[ItemState.ENRICHED],
        quarantined=counts[ItemState.QUARANTINED],
        quarantined_items=[
            QuarantinedItemOut(
                id=row.id,
                title=row.title,
                failure_count=row.failure_count,
                last_error=row.last_error,
                processed_at=row.processed_at,
            )
            for row in quarantined
        ],
    )


@router.post("/items/{item_id}/enrich", response_model=NewsItemOut)
def enrich_item_route(item_id: str, settings: SettingsDep) -> NewsItemOut:
    try:
        record = enrich_mod.enrich_item_core(item_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Item not found") from exc
    except QuarantineExhausted as exc:
        raise HTTPException(
            status_code=409,
            detail={"reason": exc.reason, "last_error": exc.last_error},
        ) from exc
    return materializer.to_item_out(record, settings.enrich_max_failures)
