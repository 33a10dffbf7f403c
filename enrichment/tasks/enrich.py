"""Celery tasks for the enrichment (consumer) stage."""

from __future__ import annotations

import os
import socket
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from pydantic import BaseModel
from sqlalchemy.orm import Session

from enrichment.services.content_fetcher import ContentFetcher
from enrichment.state import EnrichmentAttempt, state_of
from ingestion.db.models import ItemState, JobStage
from ingestion.db.session import ensure_schema, session_scope
from ingestion.errors import ContentMismatch, EnrichmentCallFailure, PipelineError, QuarantineExhausted
from ingestion.models.domain import ItemRecord
from ingestion.repositories.items import (
    JobRunRecorder,
    claim_item,
    get_item,
    release_claim,
    select_pending,
    update_item,
)
from ingestion.settings import CALLS_PER_ITEM, Settings, get_settings
from ingestion.utils.logging import get_logger
from llm.client.openai_client import LLMError, OpenAIClient, ProviderFn

logger = get_logger(__name__)

# Injection points for tests: LLM provider fn (None means real OpenAI) and content fetcher.
PROVIDER_FACTORY: Callable[[], Optional[ProviderFn]] | None = None
CONTENT_FETCHER_FACTORY: Callable[[Settings], ContentFetcher] | None = None

Clock = Callable[[], datetime]


class BatchReport(BaseModel):
    selected: int = 0
    claimed: int = 0
    enriched: int = 0
    failed: int = 0
    quarantined: int = 0
    skipped: int = 0


def _worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"[-64:]


def _clock(now: datetime | None) -> Clock:
    if now is not None:
        return lambda: now
    return lambda: datetime.now(timezone.utc)


def _build_fetcher(settings: Settings) -> ContentFetcher:
    if CONTENT_FETCHER_FACTORY is not None:
        return CONTENT_FETCHER_FACTORY(settings)
    return ContentFetcher.from_settings(settings)


def _build_client() -> OpenAIClient:
    provider = PROVIDER_FACTORY() if PROVIDER_FACTORY else None
    return OpenAIClient.from_env(provider=provider)


def _run_steps(attempt: EnrichmentAttempt, *, client: OpenAIClient, fetcher: ContentFetcher) -> None:
    """Run the still-needed steps, recording each outcome on ``attempt``."""
    record = attempt.record
    if not attempt.has_content:
        try:
            attempt.record_content(fetcher.fetch(record.source_url))
        except PipelineError as exc:
            attempt.record_failure(exc.reason)
            return

    if attempt.needs_sentiment:
        try:
            sentiment = client.classify_sentiment(record.title, attempt.content or "")
        except LLMError as exc:
            attempt.record_failure(EnrichmentCallFailure("sentiment", str(exc)).reason)
        else:
            attempt.record_sentiment(sentiment.label)

    if attempt.needs_summary:
        try:
            summary = client.summarize(record.title, attempt.content or "")
        except LLMError as exc:
            attempt.record_failure(EnrichmentCallFailure("summary", str(exc)).reason)
        else:
            if summary.content_mismatch or not summary.summary_text:
                # refetch on the next attempt
                attempt.discard_content()
                attempt.record_failure(ContentMismatch.reason)
            else:
                attempt.record_summary(summary.summary_text)


def _release_quietly(session: Session, item_id: str, owner: str) -> None:
    try:
        session.rollback()
        release_claim(session, item_id, owner=owner)
        session.commit()
    except Exception:  # pragma: no cover - lease expires on its own
        logger.warning("enrich.release_failed", extra={"item_id": item_id, "owner": owner}, exc_info=True)


def _enrich_one(
    session: Session,
    item_id: str,
    *,
    settings: Settings,
    client: OpenAIClient,
    fetcher: ContentFetcher,
    owner: str,
    clock: Clock,
    report: BatchReport,
    trace_id: str,
) -> Optional[ItemState]:
    """Claim, attempt and persist one item. Returns the state written, or None if skipped."""
    record = claim_item(
        session,
        item_id,
        owner=owner,
        lease_seconds=settings.enrich_lease_seconds,
        max_failures=settings.enrich_max_failures,
        now=clock(),
    )
    session.commit()
    if record is None:
        report.skipped += 1
        logger.info("enrich.claim_lost", extra={"trace_id": trace_id, "item_id": item_id})
        return None
    report.claimed += 1
    extra = {"trace_id": trace_id, "item_id": item_id}

    try:
        attempt = EnrichmentAttempt(record, max_failures=settings.enrich_max_failures)
        try:
            _run_steps(attempt, client=client, fetcher=fetcher)
        except SoftTimeLimitExceeded:
            raise
        except Exception:
            logger.exception("enrich.unexpected_error", extra=extra)
            attempt.record_failure("unexpected_error")

        values = attempt.finalize(clock())
        written = update_item(
            session,
            item_id,
            values,
            owner=owner,
            expected_failure_count=record.failure_count,
        )
        session.commit()
    except BaseException:
        _release_quietly(session, item_id, owner)
        raise

    if not written:
        report.skipped += 1
        logger.warning("enrich.write_conflict", extra=extra)
        return None

    outcome = attempt.outcome()
    if outcome is ItemState.ENRICHED:
        report.enriched += 1
        logger.info("enrich.item_enriched", extra=extra)
    elif outcome is ItemState.QUARANTINED:
        report.quarantined += 1
        logger.warning("enrich.item_quarantined", extra={**extra, "last_error": values["last_error"]})
    else:
        report.failed += 1
        logger.info("enrich.item_failed", extra={**extra, "last_error": values["last_error"]})
    return outcome


def enrich_batch_core(*, batch_size: int | None = None, now: datetime | None = None) -> BatchReport:
    """Enrich up to one batch of Pending items, newest first.

    Each item is claimed, attempted and written back on its own before the
    next one starts, so an interrupted run loses at most the item in flight.
    """
    settings = get_settings()
    ensure_schema()
    limit = min(batch_size or settings.enrich_batch_size, settings.external_call_budget // CALLS_PER_ITEM)
    clock = _clock(now)
    owner = _worker_id()
    trace_id = str(uuid.uuid4())
    report = BatchReport()

    client = _build_client()
    fetcher = _build_fetcher(settings)

    with session_scope() as session, JobRunRecorder(
        session,
        stage=JobStage.ENRICH,
        source="openai",
        task_name="enrich_batch",
        trace_id=trace_id,
    ) as job:
        pending = select_pending(
            session,
            limit=limit,
            max_failures=settings.enrich_max_failures,
            now=clock(),
        )
        report.selected = len(pending)
        logger.info("enrich.start", extra={"trace_id": trace_id, "selected": report.selected, "owner": owner})
        try:
            for item in pending:
                _enrich_one(
                    session,
                    item.id,
                    settings=settings,
                    client=client,
                    fetcher=fetcher,
                    owner=owner,
                    clock=clock,
                    report=report,
                    trace_id=trace_id,
                )
        finally:
            job.items_processed = report.enriched
            job.items_failed = report.failed + report.quarantined

    logger.info("enrich.done", extra={"trace_id": trace_id, **report.model_dump()})
    return report


def enrich_item_core(item_id: str, *, now: datetime | None = None) -> ItemRecord:
    """Run one attempt for a single item on demand and return its stored row.

    Raises ``LookupError`` for unknown ids and :class:`QuarantineExhausted`
    for quarantined items. Enriched items are returned unchanged.
    """
    settings = get_settings()
    ensure_schema()
    clock = _clock(now)
    trace_id = str(uuid.uuid4())

    with session_scope() as session:
        record = get_item(session, item_id)
        if record is None:
            raise LookupError(f"unknown item: {item_id}")
        state = state_of(record, settings.enrich_max_failures)
        if state is ItemState.QUARANTINED:
            raise QuarantineExhausted(item_id, record.last_error)
        if state is ItemState.ENRICHED:
            return record

        report = BatchReport(selected=1)
        with JobRunRecorder(
            session,
            stage=JobStage.ENRICH,
            source="openai",
            task_name="enrich_item",
            trace_id=trace_id,
        ) as job:
            _enrich_one(
                session,
                item_id,
                settings=settings,
                client=_build_client(),
                fetcher=_build_fetcher(settings),
                owner=_worker_id(),
                clock=clock,
                report=report,
                trace_id=trace_id,
            )
            job.items_processed = report.enriched
            job.items_failed = report.failed + report.quarantined

        fresh = get_item(session, item_id)
        if fresh is None:
            raise LookupError(f"item disappeared during enrichment: {item_id}")
        return fresh


@shared_task(
    name="enrichment.tasks.enrich.enrich_batch",
    queue="enrichment.enrich",
)
def enrich_batch() -> dict:  # pragma: no cover - thin Celery wrapper
    report = enrich_batch_core()
    from ingestion.tasks.deliver import refresh_snapshot_task

    refresh_snapshot_task.delay()
    return report.model_dump()
