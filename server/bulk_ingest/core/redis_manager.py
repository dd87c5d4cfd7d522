"""Redis layout and async access for import progress snapshots.

The pipeline writes through its synchronous ``RedisNotificationChannel``;
the async ``ProgressManager`` below reads the same keys for the SSE endpoint.

* ``{namespace}:hash:{job_id}`` holds the latest snapshot, one JSON value per field
* ``{namespace}:channel:{job_id}`` carries every update as a single JSON document
"""
from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Mapping
from uuid import UUID

from redis.asyncio import Redis, from_url
from redis.asyncio.client import PubSub

from bulk_ingest.core.config import Settings, get_settings

DEFAULT_PROGRESS_TTL_SECONDS = 60 * 60  # snapshots outlive the job by an hour
DEFAULT_NAMESPACE = "import_progress"


def progress_hash_key(namespace: str, job_id: str | UUID) -> str:
    return f"{namespace}:hash:{job_id}"


def progress_channel(namespace: str, job_id: str | UUID) -> str:
    return f"{namespace}:channel:{job_id}"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def encode_message(payload: Mapping[str, Any]) -> str:
    """Serialise a whole snapshot for pub/sub."""
    return json.dumps(dict(payload), default=_json_default)


def encode_fields(payload: Mapping[str, Any]) -> dict[str, str]:
    """Serialise each snapshot field separately for storage in a hash."""
    return {key: json.dumps(value, default=_json_default) for key, value in payload.items()}


def _text(value: str | bytes) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return value


def decode_fields(raw: Mapping[str | bytes, str | bytes]) -> dict[str, Any]:
    """Inverse of ``encode_fields``; values that are not JSON come back as text."""
    decoded: dict[str, Any] = {}
    for key, value in raw.items():
        text = _text(value)
        try:
            decoded[_text(key)] = json.loads(text)
        except json.JSONDecodeError:
            decoded[_text(key)] = text
    return decoded


def create_redis_client(url: str, *, decode_responses: bool = False) -> Redis:
    """Return an asyncio Redis client for ``url``."""

    if decode_responses:
        return from_url(url, decode_responses=True, encoding="utf-8", health_check_interval=30)
    return from_url(url, decode_responses=False, health_check_interval=30)


def get_redis_client(*, decode_responses: bool = False) -> Redis:
    """Return an asyncio Redis client pointed at ``REDIS_URL``."""
    return create_redis_client(get_settings().redis_url, decode_responses=decode_responses)


class ProgressManager:
    """Async reader of job progress for the SSE endpoint.

    Snapshots are written by the pipeline through the synchronous
    ``RedisNotificationChannel``; this side only reads them back and
    subscribes to live updates.
    """

    def __init__(self, redis: Redis, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._redis = redis
        self._namespace = namespace

    @classmethod
    def from_settings(cls, redis: Redis, settings: Settings | None = None) -> "ProgressManager":
        settings = settings or get_settings()
        return cls(redis, namespace=settings.progress_namespace)

    def channel(self, job_id: str | UUID) -> str:
        return progress_channel(self._namespace, job_id)

    async def get_progress(self, job_id: str | UUID) -> Mapping[str, Any] | None:
        """Return the latest stored snapshot, or ``None`` if it expired or never existed."""
        raw = await self._redis.hgetall(progress_hash_key(self._namespace, job_id))
        return decode_fields(raw) if raw else None

    async def subscribe(self, job_id: str | UUID) -> PubSub:
        """Return a pub/sub handle already subscribed to the job's channel."""

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.channel(job_id))
        return pubsub
