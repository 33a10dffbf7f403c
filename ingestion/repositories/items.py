"""Repositories for news items and job runs.

All item writes are single-row statements. Lease and optimistic guards live
in the WHERE clause so that the row itself stays the only authority.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ingestion.db.models import ItemState, JobRun, JobStage, JobStatus, NewsItem
from ingestion.models.domain import FeedItemDTO, ItemRecord

# Columns the consumer may write; everything else is immutable metadata.
UPDATABLE_COLUMNS = frozenset(
    {
        "content",
        "sentiment",
        "summary",
        "needs_sentiment",
        "needs_summary",
        "failure_count",
        "last_error",
        "processed_at",
    }
)
_FLAG_COLUMNS = ("needs_sentiment", "needs_summary")


def _needs_work():
    return or_(NewsItem.needs_sentiment.is_(True), NewsItem.needs_summary.is_(True))


def _lease_free(now: datetime):
    return or_(NewsItem.lease_expires_at.is_(None), NewsItem.lease_expires_at <= now)


def get_existing_ids(session: Session, ids: Iterable[str]) -> set[str]:
    wanted = list(ids)
    if not wanted:
        return set()
    stmt = select(NewsItem.id).where(NewsItem.id.in_(wanted))
    return {row[0] for row in session.execute(stmt)}


def insert_if_absent(session: Session, dto: FeedItemDTO) -> bool:
    """Insert a Pending row for ``dto`` unless its id exists. Returns True if inserted."""
    if session.get(NewsItem, dto.id) is not None:
        return False
    entity = NewsItem(
        id=dto.id,
        source_url=str(dto.source_url),
        title=dto.title,
        published_at=dto.published_at,
        description=dto.description,
        source_name=dto.source_name,
        image_url=dto.image_url,
        language=dto.language,
        needs_sentiment=True,
        needs_summary=True,
        failure_count=0,
    )
    try:
        # savepoint: a concurrent producer may have inserted the same id
        with session.begin_nested():
            session.add(entity)
    except IntegrityError:
        return False
    return True


def select_pending(
    session: Session,
    *,
    limit: int,
    max_failures: int,
    now: datetime | None = None,
) -> list[ItemRecord]:
    """Items with work left, not quarantined and not leased, newest first."""
    current = now or datetime.now(timezone.utc)
    stmt = (
        select(NewsItem)
        .where(_needs_work())
        .where(NewsItem.failure_count < max_failures)
        .where(_lease_free(current))
        .order_by(NewsItem.published_at.desc(), NewsItem.id)
        .limit(limit)
    )
    return [ItemRecord.model_validate(row) for row in session.execute(stmt).scalars()]


def get_item(session: Session, item_id: str) -> ItemRecord | None:
    row = session.get(NewsItem, item_id, populate_existing=True)
    return ItemRecord.model_validate(row) if row is not None else None


def claim_item(
    session: Session,
    item_id: str,
    *,
    owner: str,
    lease_seconds: int,
    max_failures: int,
    now: datetime | None = None,
) -> ItemRecord | None:
    """Take the lease on a still-Pending item. Returns the fresh row or None if lost."""
    current = now or datetime.now(timezone.utc)
    stmt = (
        update(NewsItem)
        .where(NewsItem.id == item_id)
        .where(_needs_work())
        .where(NewsItem.failure_count < max_failures)
        .where(_lease_free(current))
        .values(lease_owner=owner, lease_expires_at=current + timedelta(seconds=lease_seconds))
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount != 1:
        return None
    session.flush()
    return get_item(session, item_id)


def release_claim(session: Session, item_id: str, *, owner: str) -> bool:
    stmt = (
        update(NewsItem)
        .where(and_(NewsItem.id == item_id, NewsItem.lease_owner == owner))
        .values(lease_owner=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def update_item(
    session: Session,
    item_id: str,
    fields: Mapping[str, Any],
    *,
    owner: str,
    expected_failure_count: int,
) -> bool:
    """Write one item's attempt result and release its lease.

    The write applies only while ``owner`` still holds the lease and the
    stored ``failure_count`` is the one the attempt started from. Flags are
    only ever written as False.
    """
    unknown = set(fields) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"immutable or unknown columns: {sorted(unknown)}")
    values = dict(fields)
    for flag in _FLAG_COLUMNS:
        if values.get(flag) is not False:
            values.pop(flag, None)
    values.update(lease_owner=None, lease_expires_at=None)
    stmt = (
        update(NewsItem)
        .where(NewsItem.id == item_id)
        .where(NewsItem.lease_owner == owner)
        .where(NewsItem.failure_count == expected_failure_count)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def select_snapshot_rows(
    session: Session,
    *,
    limit: int,
    max_failures: int,
    updated_since: datetime,
) -> list[ItemRecord]:
    """Enriched, quarantined and recently touched Pending items, newest first."""
    enriched = and_(NewsItem.needs_sentiment.is_(False), NewsItem.needs_summary.is_(False))
    stmt = (
        select(NewsItem)
        .where(
            or_(
                enriched,
                NewsItem.failure_count >= max_failures,
                NewsItem.processed_at >= updated_since,
            )
        )
        .order_by(NewsItem.published_at.desc(), NewsItem.id)
        .limit(limit)
    )
    return [ItemRecord.model_validate(row) for row in session.execute(stmt).scalars()]


def count_by_state(session: Session, *, max_failures: int) -> dict[ItemState, int]:
    enriched = and_(NewsItem.needs_sentiment.is_(False), NewsItem.needs_summary.is_(False))
    quarantined = and_(_needs_work(), NewsItem.failure_count >= max_failures)
    stmt = select(
        func.count(),
        func.sum(case((enriched, 1), else_=0)),
        func.sum(case((quarantined, 1), else_=0)),
    ).select_from(NewsItem)
    total, enriched_count, quarantined_count = session.execute(stmt).one()
    enriched_count = int(enriched_count or 0)
    quarantined_count = int(quarantined_count or 0)
    return {
        ItemState.PENDING: int(total) - enriched_count - quarantined_count,
        ItemState.ENRICHED: enriched_count,
        ItemState.QUARANTINED: quarantined_count,
    }


def list_quarantined(session: Session, *, max_failures: int, limit: int = 50) -> list[ItemRecord]:
    stmt = (
        select(NewsItem)
        .where(_needs_work())
        .where(NewsItem.failure_count >= max_failures)
        .order_by(NewsItem.processed_at.desc(), NewsItem.id)
        .limit(limit)
    )
    return [ItemRecord.model_validate(row) for row in session.execute(stmt).scalars()]


def last_run_status(session: Session, *, stage: JobStage, source: str, query: str | None = None) -> JobStatus | None:
    """Status of the most recent run for ``stage``/``source``/``query``, or None if it never ran."""
    stmt = (
        select(JobRun.status)
        .where(JobRun.stage == stage)
        .where(JobRun.source == source)
        .where(JobRun.query == query if query is not None else JobRun.query.is_(None))
        .order_by(JobRun.started_at.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


class JobRunRecorder:
    """Context manager to record job run lifecycle."""

    def __init__(
        self,
        session: Session,
        *,
        stage: JobStage,
        source: str | None,
        task_name: str,
        trace_id: str | None = None,
        query: str | None = None,
    ) -> None:
        self._session = session
        self._job = JobRun(
            stage=stage,
            status=JobStatus.RUNNING,
            source=source,
            query=query,
            task_name=task_name,
            trace_id=trace_id,
            started_at=datetime.now(timezone.utc),
        )

    def __enter__(self) -> JobRun:
        self._session.add(self._job)
        # Commit initial RUNNING state so we have a durable record even if later work fails
        self._session.commit()
        return self._job

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        if exc is None:
            self._job.status = JobStatus.SUCCEEDED
        else:
            self._job.status = JobStatus.FAILED
            self._job.error_code = str(getattr(exc, "reason", type(exc).__name__))[:64]
            self._job.error_message = str(exc)[:512]
        self._job.finished_at = datetime.now(timezone.utc)
        self._session.add(self._job)
        # Commit final state before outer transaction may roll back
        try:
            self._session.commit()
        except Exception:  # pragma: no cover - do not mask original error
            self._session.rollback()
