"""Database utilities for the durable store."""

from .models import Base, ItemState, JobRun, JobStage, JobStatus, NewsItem  # noqa: F401
from .session import ensure_schema, get_engine, get_sessionmaker, session_scope  # noqa: F401

__all__ = [
    "Base",
    "ItemState",
    "JobRun",
    "JobStage",
    "JobStatus",
    "NewsItem",
    "ensure_schema",
    "get_engine",
    "get_sessionmaker",
    "session_scope",
]
