"""Celery application bootstrap."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict

from celery import Celery, signals
from celery.schedules import schedule as celery_schedule

from .settings import FeedSchedule, Settings, get_settings
from .utils.logging import configure_logging

_CELERY_APP: Celery | None = None

COLLECT_TASK = "ingestion.tasks.collect.collect_feed"
ENRICH_TASK = "enrichment.tasks.enrich.enrich_batch"
REFRESH_TASK = "ingestion.tasks.deliver.refresh_snapshot"
TASK_MODULES = (
    "ingestion.tasks.collect",
    "ingestion.tasks.deliver",
    "enrichment.tasks.enrich",
)


def create_celery_app(settings: Settings | None = None) -> Celery:
    """Build the Celery instance from settings."""
    config = settings or get_settings()
    configure_logging(config.structlog_level, json_enabled=config.log_json)

    app = Celery(
        "ingestion",
        broker=config.redis_url,
        backend=config.redis_url,
        include=list(TASK_MODULES),
    )
    app.conf.update(
        task_default_queue="ingestion.default",
        task_default_exchange="ingestion",
        task_default_routing_key="ingestion.default",
        task_soft_time_limit=config.celery_task_soft_time_limit,
        worker_concurrency=config.celery_worker_concurrency,
        beat_schedule=_build_beat_schedule(config),
        timezone="UTC",
        enable_utc=True,
        worker_send_task_events=True,
        task_send_sent_event=True,
    )

    _install_signal_handlers(app)
    return app


def get_celery_app() -> Celery:
    """Return the singleton Celery instance."""
    global _CELERY_APP
    if _CELERY_APP is None:
        _CELERY_APP = create_celery_app()
    return _CELERY_APP


def _build_beat_schedule(settings: Settings) -> Dict[str, Dict[str, Any]]:
    schedule: Dict[str, Dict[str, Any]] = {}
    for index, item in enumerate(settings.collection_schedules):
        if not item.enabled:
            continue
        schedule[_build_schedule_name(item, index)] = {
            "task": COLLECT_TASK,
            "schedule": celery_schedule(timedelta(minutes=item.interval_minutes)),
            "args": (item.source, item.query),
            "options": {"queue": "ingestion.collect"},
        }
    schedule["enrich.batch"] = {
        "task": ENRICH_TASK,
        "schedule": celery_schedule(timedelta(minutes=settings.enrich_interval_minutes)),
        "options": {"queue": "enrichment.enrich"},
    }
    schedule["deliver.refresh"] = {
        "task": REFRESH_TASK,
        "schedule": celery_schedule(timedelta(minutes=settings.refresh_interval_minutes)),
        "options": {"queue": "deliver.refresh"},
    }
    return schedule


def _build_schedule_name(item: FeedSchedule, index: int) -> str:
    slug = "-".join(item.query.lower().split())
    return f"collect.{item.source}.{slug}.{index}"


def _install_signal_handlers(app: Celery) -> None:
    logger = logging.getLogger("ingestion.worker")

    @signals.worker_shutdown.connect  # type: ignore[attr-defined]
    def _on_worker_shutdown(sender=None, **kwargs):  # noqa: ANN001
        logger.info("worker.shutdown", extra={"sender": str(sender)})
