"""NewsData-style feed connector (provider-injected for tests/offline)."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ingestion.errors import FetchFailure
from ingestion.settings import get_settings

from .base import BaseConnector

RawPage = Tuple[List[Dict[str, Any]], Optional[str]]
ProviderFn = Callable[[str, Optional[str]], RawPage]


class NewsFeedConnector(BaseConnector):
    """Connector for paginated JSON news feeds.

    - with a provider: offline mode, the provider returns ``(items, next_page)``
    - without one: calls ``FEED_ENDPOINT`` over HTTP
    """

    source = "newsdata"

    def __init__(self, provider: Optional[ProviderFn] = None):
        self._provider = provider

    def _fetch_raw(self, query: str, page_token: Optional[str]) -> RawPage:
        if self._provider is not None:
            return self._provider(query, page_token)

        cfg = get_settings()
        if cfg.feed_api_key is None:
            raise FetchFailure("FEED_API_KEY is not configured.")

        params: Dict[str, Any] = {
            "apikey": cfg.feed_api_key.get_secret_value(),
            "q": query,
            "language": cfg.feed_language,
        }
        if page_token:
            params["page"] = page_token

        try:
            resp = httpx.get(
                cfg.feed_endpoint,
                params=params,
                timeout=float(cfg.feed_timeout_seconds),
            )
        except httpx.TimeoutException as exc:
            raise FetchFailure("feed request timed out") from exc
        except httpx.HTTPError as exc:
            raise FetchFailure(f"feed request failed: {exc.__class__.__name__}") from exc

        if resp.status_code >= 400:
            raise FetchFailure(f"feed returned HTTP {resp.status_code}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise FetchFailure("feed returned a non-JSON body") from exc
        if data.get("status") not in (None, "success", "ok"):
            raise FetchFailure(f"feed reported status {data.get('status')!r}")

        items = data.get("results") or data.get("articles") or []
        return list(items), data.get("nextPage")
