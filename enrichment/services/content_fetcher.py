"""Article body download and visible-text extraction."""

from __future__ import annotations

import re
from typing import Callable, Optional

import httpx
from bs4 import BeautifulSoup, Comment

from ingestion.errors import ContentMismatch, FetchFailure
from ingestion.utils.logging import get_logger

logger = get_logger(__name__)

HtmlProviderFn = Callable[[str], str]

USER_AGENT = "Mozilla/5.0 (compatible; NewsPipelineBot/1.0)"

SKIP_TAGS = (
    "script",
    "style",
    "nav",
    "header",
    "footer",
    "aside",
    "menu",
    "form",
    "svg",
    "canvas",
    "iframe",
    "noscript",
    "title",
    "button",
    "input",
    "select",
    "textarea",
)
SKIP_PATTERN = re.compile(
    r"(?:^|\s)(nav|menu|menu-item|header|footer|sidebar|aside|advertisement|ad-|promo|banner"
    r"|widget|share|social|comment|related|recommend)(?:\s|$)",
    re.IGNORECASE,
)
# Phrases that mark a short page as an interstitial rather than the article.
PLACEHOLDER_MARKERS = (
    "subscribe to continue",
    "subscribe to read",
    "enable javascript",
    "access denied",
    "are you a robot",
    "page not found",
)
_WS = re.compile(r"\s+")


def _is_chrome(tag) -> bool:  # noqa: ANN001
    attrs = getattr(tag, "attrs", None)
    if not attrs:
        return False
    classes = attrs.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    combined = " ".join([*classes, str(attrs.get("id") or "")]).strip()
    return bool(combined) and SKIP_PATTERN.search(combined) is not None


def extract_text(html: str, *, max_chars: int) -> str:
    """Return the page's visible text with page chrome removed, capped at ``max_chars``."""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup.find_all(string=lambda s: isinstance(s, Comment)):
        element.extract()
    for element in soup.find_all(SKIP_TAGS):
        element.decompose()
    for element in soup.find_all(_is_chrome):
        if not element.decomposed:
            element.decompose()

    root = soup.body or soup
    text = _WS.sub(" ", root.get_text(" ")).strip()
    return text[:max_chars]


class ContentFetcher:
    """Downloads an article page and returns its extracted text.

    Network errors, timeouts and HTTP errors raise :class:`FetchFailure`;
    pages that yield too little text or an interstitial raise
    :class:`ContentMismatch`. No retries: a failure is one failed attempt.
    """

    def __init__(
        self,
        provider: Optional[HtmlProviderFn] = None,
        *,
        timeout_seconds: float = 10.0,
        max_chars: int = 10 * 1024,
        min_chars: int = 100,
    ) -> None:
        self._provider = provider
        self.timeout_seconds = timeout_seconds
        self.max_chars = max_chars
        self.min_chars = min_chars

    @classmethod
    def from_settings(cls, settings, provider: Optional[HtmlProviderFn] = None) -> "ContentFetcher":  # noqa: ANN001
        return cls(
            provider,
            timeout_seconds=float(settings.content_fetch_timeout_seconds),
            max_chars=int(settings.content_max_chars),
            min_chars=int(settings.content_min_chars),
        )

    def _download(self, url: str) -> str:
        if self._provider is not None:
            return self._provider(url)
        try:
            resp = httpx.get(
                url,
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            raise FetchFailure(f"timed out fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise FetchFailure(f"error fetching {url}: {exc.__class__.__name__}") from exc
        if resp.status_code == 404:
            raise FetchFailure(f"article not found (404): {url}", status_code=404)
        if resp.status_code >= 400:
            raise FetchFailure(f"HTTP {resp.status_code} fetching {url}", status_code=resp.status_code)
        return resp.text

    def fetch(self, url: str) -> str:
        html = self._download(url)
        text = extract_text(html or "", max_chars=self.max_chars)
        if len(text) < self.min_chars:
            raise ContentMismatch(f"extracted {len(text)} chars from {url}, need {self.min_chars}")
        if len(text) < self.min_chars * 4:
            lowered = text.lower()
            for marker in PLACEHOLDER_MARKERS:
                if marker in lowered:
                    raise ContentMismatch(f"placeholder page at {url}: {marker!r}")
        logger.debug("content.fetched", extra={"url": url, "chars": len(text)})
        return text
