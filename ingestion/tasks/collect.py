"""Celery tasks for the collection (producer) workflow."""

from __future__ import annotations

import uuid
from typing import Callable

from celery import shared_task
from pydantic import BaseModel

from ingestion.connectors.base import BaseConnector
from ingestion.connectors.news_feed import NewsFeedConnector
from ingestion.db.models import JobStage, JobStatus
from ingestion.db.session import ensure_schema, session_scope
from ingestion.models.domain import FeedPage
from ingestion.repositories.items import JobRunRecorder, get_existing_ids, insert_if_absent, last_run_status
from ingestion.settings import get_settings
from ingestion.utils.logging import get_logger

logger = get_logger(__name__)


def _default_connector(source: str) -> BaseConnector:
    if source != NewsFeedConnector.source:
        raise ValueError(f"Unknown feed source: {source}")
    return NewsFeedConnector()


# Connector factory is kept pluggable for tests; it must return a BaseConnector.
CONNECTOR_FACTORY: Callable[[str], BaseConnector] = _default_connector


class CollectReport(BaseModel):
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0
    pages: int = 0
    reached_known: bool = False


def _store_page(session, page: FeedPage, report: CollectReport, inserted_ids: set[str]) -> bool:
    """Insert the page's unknown items. Returns True when the page held a previously known id."""
    existing = get_existing_ids(session, (item.id for item in page.items))
    met_known = False
    for item in page.items:
        if item.id in inserted_ids:
            continue
        if item.id in existing:
            # other schedules share the id space, so keep going to the end of the page
            met_known = True
            continue
        if insert_if_absent(session, item):
            inserted_ids.add(item.id)
            report.inserted += 1
    return met_known


def collect_core(source: str, query: str) -> CollectReport:
    """Fetch feed pages and insert unseen items as Pending.

    Each page is committed before the next one is requested, so a later
    page failure never undoes inserts already made in this run. Pagination
    stops after the first page holding a known id, unless the previous run
    for this source and query did not finish; then every page up to
    ``FEED_MAX_PAGES`` is walked so the pages it missed are picked up.
    """
    settings = get_settings()
    ensure_schema()
    connector = CONNECTOR_FACTORY(source)
    trace_id = str(uuid.uuid4())
    report = CollectReport()
    inserted_ids: set[str] = set()

    with session_scope() as session:
        previous = last_run_status(session, stage=JobStage.COLLECT, source=source, query=query)
    early_exit = previous in (None, JobStatus.SUCCEEDED)
    logger.info(
        "collect.start",
        extra={"trace_id": trace_id, "source": source, "query": query, "early_exit": early_exit},
    )

    with session_scope() as session, JobRunRecorder(
        session,
        stage=JobStage.COLLECT,
        source=source,
        query=query,
        task_name="collect_feed",
        trace_id=trace_id,
    ) as job:
        try:
            for page in connector.iter_pages(query, settings.feed_max_pages):
                report.pages += 1
                report.fetched += len(page.items)
                report.skipped += page.skipped
                if _store_page(session, page, report, inserted_ids):
                    report.reached_known = True
                session.commit()
                if report.reached_known and early_exit:
                    break
        finally:
            job.items_processed = report.inserted
            job.items_failed = report.skipped

    logger.info("collect.done", extra={"trace_id": trace_id, "source": source, **report.model_dump()})
    return report


@shared_task(name="ingestion.tasks.collect.collect_feed")
def collect_feed(source: str, query: str) -> int:  # pragma: no cover - wrapper
    return collect_core(source, query).inserted
