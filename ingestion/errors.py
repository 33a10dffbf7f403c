"""Failure taxonomy shared by the producer, the consumer and the fetchers.

Every error carries a short classified ``reason``. The consumer writes that
reason (never the free-form message) into ``news_items.last_error`` so that
diagnostics stay stable across attempts.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures."""

    reason = "pipeline_error"


class FetchFailure(PipelineError):
    """Network error, timeout or not-found while fetching the feed or a body."""

    reason = "fetch_failed"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ContentMismatch(PipelineError):
    """Fetched body was rejected (paywall, placeholder, unrelated page)."""

    reason = "content_mismatch"


class EnrichmentCallFailure(PipelineError):
    """Classification or summarization call errored or timed out."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step

    @property
    def reason(self) -> str:  # type: ignore[override]
        return f"{self.step}_failed"


class QuarantineExhausted(PipelineError):
    """Item used up its retry budget; reported, never retried automatically."""

    reason = "quarantined"

    def __init__(self, item_id: str, last_error: str | None = None) -> None:
        super().__init__(f"item {item_id} is quarantined: {last_error or 'no diagnostic'}")
        self.item_id = item_id
        self.last_error = last_error
