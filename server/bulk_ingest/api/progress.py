"""Server-Sent Events stream of import progress."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Mapping
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from bulk_ingest.api.deps import domain_errors, get_job_manager
from bulk_ingest.core.config import get_settings
from bulk_ingest.core.redis_manager import ProgressManager, create_redis_client, encode_message
from bulk_ingest.models.import_job import TERMINAL_STATUSES
from bulk_ingest.schemas.import_job import ImportJobResponse
from bulk_ingest.services.job_manager import JobManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/progress", tags=["progress"])

TERMINAL_STATUS_VALUES = frozenset(status.value for status in TERMINAL_STATUSES)
POLL_INTERVAL_SECONDS = 2.5
MESSAGE_WAIT_SECONDS = 1.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def get_redis_client() -> AsyncIterator[Redis]:
    """Yield a per-request Redis client for the progress stream."""
    redis = create_redis_client(get_settings().redis_url, decode_responses=True)
    try:
        yield redis
    finally:
        await redis.aclose()


def sse_data(payload: Mapping[str, Any]) -> str:
    return f"data: {encode_message(payload)}\n\n"


def snapshot_from_job(job: ImportJobResponse) -> dict[str, Any]:
    """Progress payload built from the stored job row when Redis has none."""
    return {
        "job_id": str(job.id),
        "status": job.status.value,
        "event": "snapshot",
        "processed": job.processed_records,
        "total": job.total_records,
        "successful": job.successful_records,
        "failed": job.failed_records,
        "percent": job.progress_percent,
    }


def is_terminal(payload: Mapping[str, Any]) -> bool:
    return payload.get("status") in TERMINAL_STATUS_VALUES


async def next_live_update(pubsub: PubSub) -> dict[str, Any] | None:
    """Wait briefly for one pub/sub message; ``None`` when nothing arrived."""
    try:
        message = await asyncio.wait_for(
            pubsub.get_message(ignore_subscribe_messages=True),
            timeout=MESSAGE_WAIT_SECONDS,
        )
    except asyncio.TimeoutError:
        return None
    if not message or message["type"] != "message":
        return None
    return json.loads(message["data"])


@router.get(
    "/{job_id}",
    summary="Stream import progress via SSE",
    description=(
        "Pushes progress snapshots for one import job until it is completed, "
        "failed or cancelled. A paused job keeps the stream open. Counters can "
        "always be re-read from GET /imports/{job_id}."
    ),
    responses={
        200: {
            "description": "SSE stream of progress updates",
            "content": {
                "text/event-stream": {
                    "example": 'data: {"status":"processing","processed":5000,"total":20000,"percent":25.0}\n\n'
                }
            },
        },
        404: {"description": "Import job not found"},
    },
)
async def stream_progress(
    job_id: UUID,
    manager: JobManager = Depends(get_job_manager),
    redis: Redis = Depends(get_redis_client),
) -> StreamingResponse:
    """Relay live updates, re-reading the stored snapshot when pub/sub is quiet."""
    with domain_errors():
        job = ImportJobResponse.model_validate(manager.get_job(job_id))

    progress_manager = ProgressManager.from_settings(redis)
    logger.info(f"SSE client connected for job {job_id}")

    async def events() -> AsyncIterator[str]:
        pubsub = await progress_manager.subscribe(job_id)
        try:
            current = await progress_manager.get_progress(job_id) or snapshot_from_job(job)
            yield sse_data(current)

            loop = asyncio.get_running_loop()
            polled_at = loop.time()
            while not is_terminal(current):
                update = await next_live_update(pubsub)
                if update is None and loop.time() - polled_at >= POLL_INTERVAL_SECONDS:
                    update = await progress_manager.get_progress(job_id)
                    polled_at = loop.time()

                if update:
                    current = update
                    yield sse_data(current)
                    if is_terminal(current):
                        logger.info(f"Job {job_id} reached terminal state: {current['status']}")
                        break

                # comment line keeps proxies from closing an idle stream
                yield ": heartbeat\n\n"
                await asyncio.sleep(0.1)

            yield sse_data({"event": "close", "job_id": str(job_id)})
        except asyncio.CancelledError:
            logger.info(f"SSE client disconnected for job {job_id}")
            raise
        finally:
            try:
                await pubsub.unsubscribe(progress_manager.channel(job_id))
                await pubsub.aclose()
            except Exception as exc:
                logger.warning(f"Error closing Redis subscription for job {job_id}: {exc}")

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)
