from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import Session, sessionmaker

from ingestion.db.models import JobRun, JobStage, JobStatus, NewsItem

ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture()
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'ingestion.db'}"


def _upgrade_database(db_url: str) -> None:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "ingestion/db/migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.attributes["configure_logger"] = False
    cfg.attributes["url_from_caller"] = True
    command.upgrade(cfg, "head")


def test_migrations_create_expected_tables(sqlite_url: str) -> None:
    _upgrade_database(sqlite_url)
    engine = create_engine(sqlite_url, future=True)
    inspector = inspect(engine)

    tables = set(inspector.get_table_names())
    assert {"news_items", "job_runs"}.issubset(tables)

    item_columns = {column["name"] for column in inspector.get_columns("news_items")}
    assert {
        "id",
        "needs_sentiment",
        "needs_summary",
        "failure_count",
        "last_error",
        "processed_at",
        "lease_owner",
        "lease_expires_at",
    }.issubset(item_columns)

    job_columns = {column["name"] for column in inspector.get_columns("job_runs")}
    assert {"stage", "status", "source", "query", "items_processed", "items_failed"}.issubset(job_columns)


def test_models_roundtrip(sqlite_url: str) -> None:
    _upgrade_database(sqlite_url)
    engine = create_engine(sqlite_url, future=True)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    with SessionLocal() as session:  # type: Session
        item = NewsItem(
            id="n1",
            source_url="https://example.com/article",
            title="Bitcoin hits new high",
            published_at=datetime.now(timezone.utc),
        )
        job = JobRun(stage=JobStage.COLLECT, status=JobStatus.RUNNING, task_name="collect_feed")
        session.add_all([item, job])
        session.commit()
        session.refresh(item)
        session.refresh(job)
        session.expunge(item)
        session.expunge(job)

    assert item.needs_sentiment is True
    assert item.needs_summary is True
    assert item.failure_count == 0
    assert item.created_at is not None
    assert job.items_processed == 0
    assert job.status == JobStatus.RUNNING
    assert job.created_at <= job.updated_at
