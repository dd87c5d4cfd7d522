"""Best-effort publication of job progress snapshots."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from redis import Redis

from bulk_ingest.core.redis_manager import (
    DEFAULT_NAMESPACE,
    DEFAULT_PROGRESS_TTL_SECONDS,
    encode_fields,
    encode_message,
    progress_channel,
    progress_hash_key,
)
from bulk_ingest.models.import_job import ImportJob, ImportStatus
from bulk_ingest.schemas.import_job import ImportProgress

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Anything that can fan a payload out to subscribers of a topic."""

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None: ...

    def close(self) -> None: ...


class RedisNotificationChannel:
    """Keeps the latest snapshot in a Redis hash and publishes it on pub/sub.

    Hash values are JSON encoded one field at a time so the async
    ``ProgressManager`` can read them back for the SSE endpoint.
    """

    def __init__(
        self,
        redis_client: Redis,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        ttl_seconds: int = DEFAULT_PROGRESS_TTL_SECONDS,
    ) -> None:
        """Initialize the channel.

        Args:
            redis_client: Synchronous Redis client instance
            namespace: Key prefix shared with the progress endpoint
            ttl_seconds: Lifetime of the stored snapshot
        """
        self._redis = redis_client
        self._namespace = namespace
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisNotificationChannel":
        client = Redis.from_url(url, decode_responses=False, socket_keepalive=True, socket_timeout=5)
        return cls(client, **kwargs)

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        hash_key = progress_hash_key(self._namespace, topic)
        self._redis.hset(hash_key, mapping=encode_fields(payload))
        self._redis.expire(hash_key, self._ttl_seconds)
        self._redis.publish(progress_channel(self._namespace, topic), encode_message(payload))

    def close(self) -> None:
        self._redis.close()


class NullNotificationChannel:
    """Drops every payload; used when no subscriber transport is configured."""

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        return None

    def close(self) -> None:
        return None


def build_snapshot(job: ImportJob, event: str) -> ImportProgress:
    """Derive the published progress payload from a job's stored counters."""

    total = job.total_records
    processed = job.processed_records or 0
    if total:
        percent = round(min(processed / total, 1.0) * 100, 2)
    else:
        percent = 100.0 if job.status == ImportStatus.COMPLETED else 0.0
    return ImportProgress(
        job_id=job.id,
        status=job.status,
        event=event,
        processed=processed,
        total=total,
        successful=job.successful_records or 0,
        failed=job.failed_records or 0,
        percent=percent,
        updated_at=datetime.now(timezone.utc),
    )


class ProgressBroadcaster:
    """Publishes job snapshots after each batch and on every state transition.

    Delivery is at most once per event. Publication failures are logged and
    swallowed; the job store stays the source of truth for counters.
    """

    def __init__(self, channel: NotificationChannel) -> None:
        self._channel = channel

    def broadcast(self, job: ImportJob, event: str = "progress") -> bool:
        try:
            snapshot = build_snapshot(job, event)
            self._channel.publish(str(job.id), snapshot.model_dump(mode="json"))
        except Exception as exc:
            logger.warning(f"Failed to publish progress update for job {job.id}: {exc}")
            return False
        logger.debug(
            f"Progress update published for job {job.id}: {event} "
            f"{snapshot.percent:.2f}% ({snapshot.processed}/{snapshot.total})"
        )
        return True
