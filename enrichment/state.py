"""Item state machine and the per-attempt record the consumer persists.

States are derived from the stored columns, never stored themselves::

    Pending      at least one flag set and failure_count < max_failures
    Enriched     both flags cleared (terminal)
    Quarantined  failure_count == max_failures, flags left set (terminal)

An :class:`EnrichmentAttempt` collects the outcome of the steps run against
one Pending item and turns it into the full set of column values written in
a single row update.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from enrichment.models.domain import SentimentLabel
from ingestion.db.models import ItemState
from ingestion.models.domain import ItemRecord


class InvalidTransition(Exception):
    """Raised when an attempt is started on, or applied to, a non-Pending item."""


def derive_state(
    needs_sentiment: bool,
    needs_summary: bool,
    failure_count: int,
    max_failures: int,
) -> ItemState:
    if not needs_sentiment and not needs_summary:
        return ItemState.ENRICHED
    if failure_count >= max_failures:
        return ItemState.QUARANTINED
    return ItemState.PENDING


def state_of(record: ItemRecord, max_failures: int) -> ItemState:
    return derive_state(record.needs_sentiment, record.needs_summary, record.failure_count, max_failures)


def format_error(reason: str, attempt: int, max_failures: int) -> str:
    return f"{reason} (attempt {attempt}/{max_failures})"


class EnrichmentAttempt:
    """One attempt at enriching one item.

    Steps report into the attempt; nothing touches the store until
    :meth:`finalize`. Flags only clear, and ``failure_count`` moves only
    when a flag is still set once the attempt is over.
    """

    def __init__(self, record: ItemRecord, *, max_failures: int) -> None:
        state = state_of(record, max_failures)
        if state is not ItemState.PENDING:
            raise InvalidTransition(f"item {record.id} is {state.value}, not pending")
        self.record = record
        self.max_failures = max_failures
        self.content: Optional[str] = record.content
        self.sentiment: Optional[str] = record.sentiment
        self.summary: Optional[str] = record.summary
        self.needs_sentiment = record.needs_sentiment
        self.needs_summary = record.needs_summary
        self.error_reason: Optional[str] = None
        self._finalized = False

    @property
    def has_content(self) -> bool:
        return bool(self.content)

    def record_content(self, text: str) -> None:
        self.content = text

    def discard_content(self) -> None:
        self.content = None

    def record_sentiment(self, label: SentimentLabel | str) -> None:
        self.sentiment = SentimentLabel(label).value
        self.needs_sentiment = False

    def record_summary(self, text: str) -> None:
        if not text or not text.strip():
            raise ValueError("summary must not be blank")
        self.summary = text.strip()
        self.needs_summary = False

    def record_failure(self, reason: str) -> None:
        # latest failure in the attempt is the one reported
        self.error_reason = reason

    @property
    def succeeded(self) -> bool:
        return not self.needs_sentiment and not self.needs_summary

    def finalize(self, now: datetime) -> Dict[str, Any]:
        """Return the column values for the single row write closing this attempt."""
        if self._finalized:
            raise InvalidTransition(f"attempt on item {self.record.id} already finalized")
        self._finalized = True

        values: Dict[str, Any] = {
            "content": self.content,
            "sentiment": self.sentiment,
            "summary": self.summary,
            "needs_sentiment": self.record.needs_sentiment and self.needs_sentiment,
            "needs_summary": self.record.needs_summary and self.needs_summary,
            "processed_at": now,
        }
        if self.succeeded:
            values["failure_count"] = 0
            values["last_error"] = None
            return values

        attempt = min(self.record.failure_count + 1, self.max_failures)
        values["failure_count"] = attempt
        values["last_error"] = format_error(self.error_reason or "incomplete", attempt, self.max_failures)
        return values

    def outcome(self) -> ItemState:
        """State the item lands in once :meth:`finalize` values are written."""
        if self.succeeded:
            return ItemState.ENRICHED
        attempt = min(self.record.failure_count + 1, self.max_failures)
        return derive_state(self.needs_sentiment, self.needs_summary, attempt, self.max_failures)
