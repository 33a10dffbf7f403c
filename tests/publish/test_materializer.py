from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import select

from api.redis_cache import InMemorySnapshotCache
from ingestion.db.models import JobRun, JobStage, JobStatus, NewsItem
from ingestion.db.session import ensure_schema, session_scope
from ingestion.errors import PipelineError
from ingestion.settings import reset_settings_cache
from publish import materializer

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _set_env(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("INGESTION_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("POSTGRES_DSN", f"sqlite:///{tmp_path / 'publish.db'}")
    reset_settings_cache()
    ensure_schema()
    yield
    reset_settings_cache()


def _row(item_id: str, hours_ago: int, **fields) -> NewsItem:
    values = dict(
        id=item_id,
        source_url=f"https://news.example.com/{item_id}",
        title=f"Story {item_id}",
        published_at=NOW - timedelta(hours=hours_ago),
        needs_sentiment=True,
        needs_summary=True,
        failure_count=0,
    )
    values.update(fields)
    return NewsItem(**values)


def _seed_mixed() -> None:
    with session_scope() as session:
        session.add_all(
            [
                _row("enriched-1", 1, sentiment="positive", summary="Funds approved.", needs_sentiment=False,
                     needs_summary=False, processed_at=NOW - timedelta(days=2)),
                _row("enriched-2", 2, sentiment="negative", summary="Exchange halted.", needs_sentiment=False,
                     needs_summary=False, processed_at=NOW - timedelta(days=2)),
                _row("quarantined-1", 3, failure_count=5, last_error="fetch_failed (attempt 5/5)",
                     processed_at=NOW - timedelta(days=1)),
                _row("retrying-1", 4, failure_count=2, last_error="summary_failed (attempt 2/5)",
                     sentiment="neutral", needs_sentiment=False, processed_at=NOW - timedelta(minutes=10)),
                _row("fresh-1", 0),
            ]
        )


def test_refresh_snapshot_replaces_cache_key():
    _seed_mixed()
    cache = InMemorySnapshotCache()

    total = materializer.refresh_snapshot(cache=cache, now=NOW)

    assert total == 4
    snapshot = cache.read_snapshot("news:snapshot")
    assert snapshot is not None
    assert [item["id"] for item in snapshot["items"]] == [
        "enriched-1",
        "enriched-2",
        "quarantined-1",
        "retrying-1",
    ]
    states = {item["id"]: item["state"] for item in snapshot["items"]}
    assert states["quarantined-1"] == "quarantined"
    assert states["retrying-1"] == "pending"
    assert snapshot["sentiment_counts"] == {"positive": 1, "negative": 1, "neutral": 1}
    quarantined = next(item for item in snapshot["items"] if item["id"] == "quarantined-1")
    assert quarantined["last_error"] == "fetch_failed (attempt 5/5)"


def test_refresh_snapshot_overwrites_previous_value():
    cache = InMemorySnapshotCache()
    cache.replace_snapshot("news:snapshot", {"items": [{"id": "gone"}], "total": 1})
    _seed_mixed()

    materializer.refresh_snapshot(cache=cache, now=NOW)

    snapshot = cache.read_snapshot("news:snapshot")
    assert all(item["id"] != "gone" for item in snapshot["items"])


def test_refresh_snapshot_records_job_run():
    _seed_mixed()

    materializer.refresh_snapshot(cache=InMemorySnapshotCache(), now=NOW)

    with session_scope() as session:
        job = session.execute(select(JobRun).where(JobRun.stage == JobStage.PUBLISH)).scalars().one()
        assert job.status == JobStatus.SUCCEEDED
        assert job.items_processed == 4
        assert job.task_name == "refresh_snapshot"


def test_failed_cache_write_marks_job_failed():
    class RefusingCache(InMemorySnapshotCache):
        def replace_snapshot(self, key: str, value: dict) -> bool:
            return False

    _seed_mixed()
    with pytest.raises(PipelineError):
        materializer.refresh_snapshot(cache=RefusingCache(), now=NOW)

    with session_scope() as session:
        job = session.execute(select(JobRun).where(JobRun.stage == JobStage.PUBLISH)).scalars().one()
        assert job.status == JobStatus.FAILED
        assert job.error_code == "pipeline_error"


def test_refresh_snapshot_uses_cache_factory(monkeypatch):
    cache = InMemorySnapshotCache()
    monkeypatch.setattr(materializer, "CACHE_FACTORY", lambda settings: cache)

    assert materializer.refresh_snapshot(now=NOW) == 0
    assert cache.read_snapshot("news:snapshot")["total"] == 0
