"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import csv
import os
from collections import defaultdict
import threading
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Mapping

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from bulk_ingest.core.config import Settings
from bulk_ingest.core.db import build_engine, build_session_factory
from bulk_ingest.models import Base
from bulk_ingest.services.job_manager import JobManager

# SQLite by default; point TEST_DATABASE_URL at PostgreSQL to run against it.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

HEADERS = ["object_code", "name", "rfid_tag_id", "description", "priority_level", "status"]


@pytest.fixture
def db_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """Create a fresh schema for each test.

    A file-backed SQLite database is used so the pipeline's worker threads
    and the test thread see the same data.
    """
    url = TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'ingest.db'}"
    engine = build_engine(url)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


class RecordingChannel:
    """Notification channel that keeps every published payload in memory."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []
        self.hooks: list[Callable[[str, dict[str, Any]], None]] = []
        self.closed = False
        self._lock = threading.Lock()

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            self.messages.append((topic, dict(payload)))
        for hook in list(self.hooks):
            hook(topic, dict(payload))

    def close(self) -> None:
        self.closed = True

    def events(self, topic: str | None = None) -> list[str]:
        return [payload["event"] for t, payload in self.messages if topic is None or t == topic]


class FakeRedis:
    """In-memory stand-in for the async Redis reads and pub/sub the SSE path uses."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.subscribers: defaultdict[str, list[asyncio.Queue[str]]] = defaultdict(list)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def publish(self, channel: str, message: str) -> int:
        for queue in self.subscribers[channel]:
            queue.put_nowait(message)
        return len(self.subscribers[channel])

    def pubsub(self) -> "FakePubSub":
        return FakePubSub(self)


class FakePubSub:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queue: asyncio.Queue[str] = asyncio.Queue()

    async def subscribe(self, channel: str) -> None:
        self._redis.subscribers[channel].append(self._queue)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float | None = None):
        try:
            data = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        return {"type": "message", "data": data}

    async def unsubscribe(self, *channels: str) -> None:
        return None

    async def aclose(self) -> None:
        return None


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url="sqlite://",
        batch_size=10,
        max_concurrent_jobs=2,
        channel_capacity=25,
        enable_duplicate_check=True,
        conflict_policy="strict",
        max_failed_batches=10,
        precount_rows=True,
        upload_dir=str(tmp_path),
    )


@pytest.fixture
def manager(
    session_factory: sessionmaker[Session],
    settings: Settings,
    channel: RecordingChannel,
) -> Generator[JobManager, None, None]:
    manager = JobManager(session_factory, settings=settings, channel=channel)
    yield manager
    manager.shutdown(wait=True)


def object_row(index: int, **overrides: str) -> dict[str, str]:
    """A valid import row whose natural key is derived from ``index``."""

    row = {
        "object_code": f"EVD-{index:05d}",
        "name": f"Evidence item {index}",
        "rfid_tag_id": f"RFID{index:06d}",
        "description": f"Sealed evidence bag number {index}",
        "priority_level": "normal",
        "status": "active",
    }
    row.update(overrides)
    return row


def write_csv(path: Path, rows: Iterable[Mapping[str, str]], headers: list[str] | None = None) -> Path:
    headers = headers or HEADERS
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=headers, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
    return path


@pytest.fixture
def make_csv(tmp_path: Path) -> Callable[..., Path]:
    """Write rows to a CSV file under the test's temp directory."""

    def _make(rows: Iterable[Mapping[str, str]], name: str = "objects.csv", headers: list[str] | None = None) -> Path:
        return write_csv(tmp_path / name, rows, headers)

    return _make
