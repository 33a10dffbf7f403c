from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest
from sqlalchemy import select

from enrichment.services.content_fetcher import ContentFetcher
from enrichment.tasks import enrich as enrich_mod
from ingestion.db.models import JobRun, JobStage, JobStatus
from ingestion.db.session import ensure_schema, session_scope
from ingestion.errors import FetchFailure, QuarantineExhausted
from ingestion.models.domain import FeedItemDTO
from ingestion.repositories.items import claim_item, get_item, insert_if_absent, select_pending
from ingestion.settings import reset_settings_cache
from llm.client.openai_client import PermanentLLMError
from llm.settings import reset_llm_settings_cache

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
ARTICLE_HTML = (
    "<html><body><nav>Home | Markets</nav><article><p>"
    + "Regulators approved the first spot bitcoin funds on Wednesday, opening the market to retail investors. " * 3
    + "</p></article></body></html>"
)


class SimulatedCrash(BaseException):
    """Stands in for a worker being killed mid-item."""


@pytest.fixture(autouse=True)
def _set_env(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("INGESTION_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("POSTGRES_DSN", f"sqlite:///{tmp_path / 'enrich.db'}")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-123")
    monkeypatch.setenv("LLM_RETRY_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("ENRICH_MAX_FAILURES", "5")
    reset_settings_cache()
    reset_llm_settings_cache()
    ensure_schema()
    original = (enrich_mod.PROVIDER_FACTORY, enrich_mod.CONTENT_FETCHER_FACTORY)
    yield
    enrich_mod.PROVIDER_FACTORY, enrich_mod.CONTENT_FETCHER_FACTORY = original
    reset_settings_cache()
    reset_llm_settings_cache()


def _seed(*ids: str) -> None:
    with session_scope() as session:
        for offset, item_id in enumerate(ids):
            insert_if_absent(
                session,
                FeedItemDTO(
                    id=item_id,
                    title=f"Bitcoin story {item_id}",
                    source_url=f"https://news.example.com/{item_id}",
                    published_at=NOW - timedelta(hours=offset + 1),
                ),
            )


def _llm(
    sentiment: Any = "positive",
    summary: Any = "Regulators approved spot bitcoin funds, a first for US markets.",
) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    def provider(payload: Dict[str, Any]) -> Dict[str, Any]:
        system = payload["messages"][0]["content"]
        value = sentiment if "sentiment classifier" in system else summary
        if isinstance(value, Exception):
            raise value
        key = "sentiment" if "sentiment classifier" in system else "summary"
        body = value if isinstance(value, dict) else {key: value}
        return {
            "choices": [{"message": {"content": json.dumps(body)}}],
            "usage": {"prompt_tokens": 200, "completion_tokens": 30},
            "model": "gpt-4o-mini",
        }

    return provider


def _install(llm=None, html: Callable[[str], str] | None = None, calls: List[str] | None = None) -> None:
    def fetch(url: str) -> str:
        if calls is not None:
            calls.append(url)
        return html(url) if html else ARTICLE_HTML

    provider = llm or _llm()
    enrich_mod.PROVIDER_FACTORY = lambda: provider
    enrich_mod.CONTENT_FETCHER_FACTORY = lambda settings: ContentFetcher.from_settings(settings, provider=fetch)


def _item(item_id: str):
    with session_scope() as session:
        record = get_item(session, item_id)
    assert record is not None
    return record


def test_batch_enriches_pending_items():
    _seed("a1", "a2")
    _install()

    report = enrich_mod.enrich_batch_core(now=NOW)

    assert report.selected == 2
    assert report.enriched == 2
    for item_id in ("a1", "a2"):
        row = _item(item_id)
        assert row.needs_sentiment is False
        assert row.needs_summary is False
        assert row.sentiment == "positive"
        assert row.summary.startswith("Regulators approved")
        assert row.failure_count == 0
        assert row.last_error is None
        assert row.lease_owner is None
        assert "Home | Markets" not in (row.content or "")


def test_repeated_fetch_failures_quarantine_item():
    _seed("q1")

    def broken(url: str) -> str:
        raise FetchFailure(f"article not found (404): {url}", status_code=404)

    _install(html=broken)

    for attempt in range(1, 6):
        report = enrich_mod.enrich_batch_core(now=NOW + timedelta(minutes=attempt))
        assert report.selected == 1
        row = _item("q1")
        assert row.failure_count == attempt
        assert row.last_error == f"fetch_failed (attempt {attempt}/5)"

    assert report.quarantined == 1
    row = _item("q1")
    assert row.needs_sentiment is True and row.needs_summary is True
    with session_scope() as session:
        assert select_pending(session, limit=10, max_failures=5, now=NOW + timedelta(days=1)) == []

    report = enrich_mod.enrich_batch_core(now=NOW + timedelta(days=1))
    assert report.selected == 0
    assert _item("q1").failure_count == 5


def test_crash_mid_item_leaves_it_pending_and_resumable():
    _seed("c1")

    def crashing(url: str) -> str:
        raise SimulatedCrash()

    _install(html=crashing)
    with pytest.raises(SimulatedCrash):
        enrich_mod.enrich_batch_core(now=NOW)

    row = _item("c1")
    assert row.failure_count == 0
    assert row.lease_owner is None
    assert row.needs_sentiment is True

    _install()
    report = enrich_mod.enrich_batch_core(now=NOW + timedelta(minutes=1))
    assert report.enriched == 1
    assert _item("c1").needs_summary is False


def test_crash_on_second_of_three_items_leaves_rest_pending():
    _seed("k1", "k2", "k3")

    def crash_on_k2(url: str) -> str:
        if url.endswith("k2"):
            raise SimulatedCrash()
        return ARTICLE_HTML

    _install(html=crash_on_k2)
    with pytest.raises(SimulatedCrash):
        enrich_mod.enrich_batch_core(now=NOW)

    first = _item("k1")
    assert first.needs_sentiment is False and first.needs_summary is False
    for item_id in ("k2", "k3"):
        row = _item(item_id)
        assert row.needs_sentiment is True
        assert row.needs_summary is True
        assert row.failure_count == 0
        assert row.lease_owner is None
        assert row.last_error is None

    _install()
    report = enrich_mod.enrich_batch_core(now=NOW + timedelta(minutes=1))
    assert report.selected == 2
    assert report.enriched == 2
    assert _item("k1").processed_at == first.processed_at
    for item_id in ("k2", "k3"):
        assert _item(item_id).needs_summary is False


def test_leased_item_is_skipped_until_lease_expires():
    _seed("l1")
    with session_scope() as session:
        assert claim_item(session, "l1", owner="other-worker", lease_seconds=600, max_failures=5, now=NOW)

    _install()
    report = enrich_mod.enrich_batch_core(now=NOW + timedelta(minutes=1))
    assert report.selected == 0
    assert _item("l1").lease_owner == "other-worker"

    report = enrich_mod.enrich_batch_core(now=NOW + timedelta(minutes=11))
    assert report.enriched == 1


def test_failure_on_one_item_does_not_stop_batch():
    _seed("ok1", "bad1")

    def fetch(url: str) -> str:
        if url.endswith("bad1"):
            raise FetchFailure("HTTP 500", status_code=500)
        return ARTICLE_HTML

    _install(html=fetch)
    report = enrich_mod.enrich_batch_core(now=NOW)

    assert report.enriched == 1
    assert report.failed == 1
    assert _item("ok1").needs_summary is False
    bad = _item("bad1")
    assert bad.failure_count == 1
    assert bad.last_error == "fetch_failed (attempt 1/5)"


def test_partial_success_keeps_finished_step_and_counts_failure():
    _seed("p1")
    calls: List[str] = []
    _install(llm=_llm(summary=PermanentLLMError("bad request")), calls=calls)

    enrich_mod.enrich_batch_core(now=NOW)

    row = _item("p1")
    assert row.needs_sentiment is False
    assert row.sentiment == "positive"
    assert row.needs_summary is True
    assert row.failure_count == 1
    assert row.last_error == "summary_failed (attempt 1/5)"
    assert row.content

    _install(calls=calls)
    enrich_mod.enrich_batch_core(now=NOW + timedelta(minutes=1))
    row = _item("p1")
    assert row.needs_summary is False
    assert row.failure_count == 0
    # stored content is reused, no second download
    assert len(calls) == 1


def test_content_mismatch_discards_content_for_refetch():
    _seed("m1")
    calls: List[str] = []
    _install(llm=_llm(summary={"error": "ERROR: CONTENT_MISMATCH"}), calls=calls)

    enrich_mod.enrich_batch_core(now=NOW)

    row = _item("m1")
    assert row.content is None
    assert row.needs_summary is True
    assert row.last_error == "content_mismatch (attempt 1/5)"

    _install(calls=calls)
    enrich_mod.enrich_batch_core(now=NOW + timedelta(minutes=1))
    assert len(calls) == 2
    assert _item("m1").needs_summary is False


def test_batch_size_limits_selection_newest_first(monkeypatch):
    monkeypatch.setenv("ENRICH_BATCH_SIZE", "2")
    monkeypatch.setenv("EXTERNAL_CALL_BUDGET", "6")
    reset_settings_cache()
    _seed("b1", "b2", "b3", "b4")
    _install()

    report = enrich_mod.enrich_batch_core(now=NOW)

    assert report.selected == 2
    # newest first
    assert _item("b1").needs_summary is False
    assert _item("b4").needs_summary is True


def test_batch_records_job_run():
    _seed("j1")
    _install()

    enrich_mod.enrich_batch_core(now=NOW)

    with session_scope() as session:
        job = session.execute(select(JobRun).where(JobRun.stage == JobStage.ENRICH)).scalars().one()
        assert job.status == JobStatus.SUCCEEDED
        assert job.items_processed == 1
        assert job.items_failed == 0


def test_enrich_item_core_unknown_and_quarantined():
    _install()
    with pytest.raises(LookupError):
        enrich_mod.enrich_item_core("missing")

    _seed("x1")

    def broken(url: str) -> str:
        raise FetchFailure("timed out")

    _install(html=broken)
    for attempt in range(5):
        record = enrich_mod.enrich_item_core("x1", now=NOW + timedelta(minutes=attempt))
    assert record.failure_count == 5

    with pytest.raises(QuarantineExhausted) as excinfo:
        enrich_mod.enrich_item_core("x1", now=NOW + timedelta(hours=1))
    assert excinfo.value.last_error == "fetch_failed (attempt 5/5)"


def test_enrich_item_core_returns_enriched_item_unchanged():
    _seed("e1")
    _install()
    first = enrich_mod.enrich_item_core("e1", now=NOW)
    assert first.needs_sentiment is False

    _install(llm=_llm(sentiment="negative"))
    again = enrich_mod.enrich_item_core("e1", now=NOW + timedelta(minutes=5))
    assert again.sentiment == "positive"
    assert again.processed_at == first.processed_at


def test_enrich_item_core_row_removed_midway_raises_lookup_error(monkeypatch):
    _seed("g1")
    _install()
    real_get_item = enrich_mod.get_item
    calls = {"n": 0}

    def vanishing(session, item_id):
        calls["n"] += 1
        return real_get_item(session, item_id) if calls["n"] == 1 else None

    monkeypatch.setattr(enrich_mod, "get_item", vanishing)

    with pytest.raises(LookupError):
        enrich_mod.enrich_item_core("g1", now=NOW)
