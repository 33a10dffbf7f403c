from __future__ import annotations

import pytest

pytest.importorskip("pytest_httpx")

import httpx

from ingestion.connectors.news_feed import NewsFeedConnector
from ingestion.errors import FetchFailure
from ingestion.settings import reset_settings_cache

BASE = "https://newsdata.io/api/1/latest"


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("FEED_API_KEY", "test-key")
    monkeypatch.setenv("FEED_ENDPOINT", BASE)
    monkeypatch.setenv("FEED_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("FEED_LANGUAGE", "en")
    monkeypatch.setenv("INGESTION_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("POSTGRES_DSN", "sqlite:///./var/dev.db")
    reset_settings_cache()
    yield
    reset_settings_cache()


def test_feed_pages_follow_next_page(httpx_mock):
    httpx_mock.add_response(
        method="GET",
        url=f"{BASE}?apikey=test-key&q=bitcoin&language=en",
        json={
            "status": "success",
            "results": [
                {"article_id": "n1", "title": "BTC up", "link": "https://ex.com/1", "pubDate": "2026-10-01 10:00:00"},
            ],
            "nextPage": "p2",
        },
    )
    httpx_mock.add_response(
        method="GET",
        url=f"{BASE}?apikey=test-key&q=bitcoin&language=en&page=p2",
        json={
            "status": "success",
            "results": [
                {"article_id": "n2", "title": "BTC down", "link": "https://ex.com/2", "pubDate": "2026-09-30 10:00:00"},
            ],
            "nextPage": None,
        },
    )

    pages = list(NewsFeedConnector().iter_pages("bitcoin", max_pages=5))

    assert [item.id for page in pages for item in page.items] == ["n1", "n2"]


def test_feed_http_error_raises_fetch_failure(httpx_mock):
    httpx_mock.add_response(method="GET", url=f"{BASE}?apikey=test-key&q=bitcoin&language=en", status_code=429)

    with pytest.raises(FetchFailure) as exc:
        NewsFeedConnector().fetch_page("bitcoin")

    assert exc.value.status_code == 429
    assert exc.value.reason == "fetch_failed"


def test_feed_timeout_raises_fetch_failure(httpx_mock):
    httpx_mock.add_exception(httpx.ReadTimeout("slow"))

    with pytest.raises(FetchFailure):
        NewsFeedConnector().fetch_page("bitcoin")
