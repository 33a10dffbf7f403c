"""Celery tasks for the deliver/publish stage."""

from __future__ import annotations

from celery import shared_task

from publish.materializer import refresh_snapshot


@shared_task(
    name="ingestion.tasks.deliver.refresh_snapshot",
    queue="deliver.refresh",
)
def refresh_snapshot_task() -> int:  # pragma: no cover - thin Celery wrapper
    """Rebuild the read snapshot from the durable store and replace the cache key."""
    return refresh_snapshot()
