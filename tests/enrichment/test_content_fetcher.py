from __future__ import annotations

import pytest

from enrichment.services.content_fetcher import ContentFetcher, extract_text
from ingestion.errors import ContentMismatch, FetchFailure

ARTICLE = " ".join(["Bitcoin rose sharply on Tuesday after regulators approved new spot funds."] * 5)

PAGE = f"""
<html>
  <head><title>Page title</title><style>.x {{ color: red; }}</style></head>
  <body>
    <header>Site header</header>
    <nav>Home | Markets</nav>
    <div class="sidebar">Trending now</div>
    <div id="comments" class="comment">Reader comment</div>
    <article><p>{ARTICLE}</p></article>
    <script>var tracking = 1;</script>
    <!-- hidden note -->
    <footer>Copyright</footer>
  </body>
</html>
"""


def test_extract_text_drops_page_chrome():
    text = extract_text(PAGE, max_chars=10_000)

    assert text.startswith("Bitcoin rose sharply")
    for noise in ("Site header", "Home | Markets", "Trending now", "Reader comment", "tracking", "hidden note", "Copyright", "Page title"):
        assert noise not in text


def test_extract_text_caps_length():
    assert len(extract_text(PAGE, max_chars=50)) == 50


def test_fetch_returns_extracted_text():
    fetcher = ContentFetcher(provider=lambda url: PAGE, min_chars=100)

    assert "regulators approved" in fetcher.fetch("https://ex.com/a")


def test_short_page_is_content_mismatch():
    fetcher = ContentFetcher(provider=lambda url: "<html><body><p>Too short.</p></body></html>", min_chars=100)

    with pytest.raises(ContentMismatch) as exc:
        fetcher.fetch("https://ex.com/a")
    assert exc.value.reason == "content_mismatch"


def test_interstitial_page_is_content_mismatch():
    html = "<html><body><p>" + "Please subscribe to continue reading this premium story today. " * 3 + "</p></body></html>"
    fetcher = ContentFetcher(provider=lambda url: html, min_chars=100)

    with pytest.raises(ContentMismatch):
        fetcher.fetch("https://ex.com/a")


def test_provider_fetch_failure_propagates():
    def provider(url: str) -> str:
        raise FetchFailure(f"not found: {url}", status_code=404)

    with pytest.raises(FetchFailure):
        ContentFetcher(provider=provider).fetch("https://ex.com/missing")
