"""Connector abstraction and feed-item normalization."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from ingestion.models.domain import FeedItemDTO, FeedPage
from ingestion.utils.logging import get_logger

logger = get_logger(__name__)

_ID_KEYS = ("article_id", "id", "link")
_URL_KEYS = ("link", "url")
_PUBLISHED_KEYS = ("pubDate", "published_at", "publishedAt", "published")
_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%SZ")


def _first(item: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[Any]:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_published(value: Any, fallback: datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        text = value.strip()
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
    return fallback


class BaseConnector(ABC):
    """Reads a feed one page at a time and normalizes its entries.

    A connector never retries: a page that cannot be fetched raises
    :class:`ingestion.errors.FetchFailure` and the run ends there.
    """

    source: str

    def fetch_page(self, query: str, page_token: Optional[str] = None) -> FeedPage:
        raw_items, next_page = self._fetch_raw(query, page_token)
        return self._normalize_page(raw_items, next_page)

    def iter_pages(self, query: str, max_pages: int) -> Iterator[FeedPage]:
        """Yield pages newest first until the feed runs out or ``max_pages`` is hit."""
        token: Optional[str] = None
        for _ in range(max_pages):
            page = self.fetch_page(query, token)
            yield page
            if not page.next_page or (not page.items and not page.skipped):
                return
            token = page.next_page

    @abstractmethod
    def _fetch_raw(self, query: str, page_token: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Return raw entry dicts for one page and the next page token."""

    def _normalize_page(self, items: List[Dict[str, Any]], next_page: Optional[str]) -> FeedPage:
        now = datetime.now(timezone.utc)
        normalized: List[FeedItemDTO] = []
        seen: set[str] = set()
        skipped = 0
        for item in items:
            dto = self._normalize_item(item, now)
            if dto is None:
                skipped += 1
                continue
            if dto.id in seen:
                continue
            seen.add(dto.id)
            normalized.append(dto)
        return FeedPage(items=normalized, next_page=next_page, skipped=skipped)

    def _normalize_item(self, item: Dict[str, Any], fetched_at: datetime) -> Optional[FeedItemDTO]:
        item_id = _first(item, _ID_KEYS)
        url = _first(item, _URL_KEYS)
        if item_id is None or url is None:
            logger.warning(
                "collect.item_skipped",
                extra={"source": self.source, "reason": "missing_id_or_url", "title": item.get("title")},
            )
            return None
        source_name = item.get("source_name") or item.get("source_id")
        if isinstance(item.get("source"), dict):
            source_name = source_name or item["source"].get("name")
        try:
            return FeedItemDTO(
                id=str(item_id),
                source_url=str(url).strip(),  # pydantic validates as HttpUrl
                title=str(item.get("title") or "").strip() or str(url),
                published_at=_parse_published(_first(item, _PUBLISHED_KEYS), fetched_at),
                description=item.get("description"),
                source_name=str(source_name)[:128] if source_name else None,
                image_url=item.get("image_url") or item.get("urlToImage"),
                language=str(item["language"])[:8] if item.get("language") else None,
            )
        except ValidationError as exc:
            logger.warning(
                "collect.item_skipped",
                extra={"source": self.source, "reason": "invalid", "item_id": str(item_id), "errors": exc.error_count()},
            )
            return None
