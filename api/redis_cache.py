"""Cache store for the read snapshot."""

from __future__ import annotations

import json
from typing import Dict, Optional, Protocol

import redis
from redis.exceptions import RedisError

from ingestion.utils.logging import get_logger

logger = get_logger(__name__)


class SnapshotCache(Protocol):
    def read_snapshot(self, key: str) -> Optional[dict]: ...

    def replace_snapshot(self, key: str, value: dict) -> bool: ...


class RedisSnapshotCache:
    """Redis-backed snapshot cache.

    One key holds the whole serialized snapshot and is replaced with a
    single ``SET ... EX`` so readers never observe a partial value.
    """

    def __init__(self, client: "redis.Redis", *, ttl_seconds: int = 3600):
        self.client = client
        self.ttl = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, *, ttl_seconds: int = 3600) -> "RedisSnapshotCache":
        client = redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=2.0)
        return cls(client, ttl_seconds=ttl_seconds)

    def read_snapshot(self, key: str) -> Optional[dict]:
        """Return the cached snapshot, or None on a miss.

        A miss covers an absent or expired key, an unreachable server and an
        undecodable value.
        """
        try:
            data = self.client.get(key)
        except RedisError as exc:
            logger.warning("cache.read_failed", extra={"key": key, "error": str(exc)})
            return None
        if not data:
            return None
        try:
            value = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("cache.undecodable", extra={"key": key})
            return None
        return value if isinstance(value, dict) else None

    def replace_snapshot(self, key: str, value: dict) -> bool:
        try:
            self.client.set(key, json.dumps(value, default=str), ex=self.ttl)
        except RedisError as exc:
            logger.warning("cache.replace_failed", extra={"key": key, "error": str(exc)})
            return False
        return True


class InMemorySnapshotCache:
    """Process-local cache for tests and single-process runs."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def read_snapshot(self, key: str) -> Optional[dict]:
        data = self._data.get(key)
        return json.loads(data) if data else None

    def replace_snapshot(self, key: str, value: dict) -> bool:
        self._data[key] = json.dumps(value, default=str)
        return True
