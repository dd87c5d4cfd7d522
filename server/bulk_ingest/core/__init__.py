"""Core application utilities and infrastructure."""
from .config import Settings, get_settings
from .db import build_engine, build_session_factory, get_session, get_session_factory, session_scope
from .redis_manager import (
    DEFAULT_NAMESPACE,
    DEFAULT_PROGRESS_TTL_SECONDS,
    ProgressManager,
    create_redis_client,
    get_redis_client,
)

__all__ = [
    "Settings",
    "get_settings",
    "build_engine",
    "build_session_factory",
    "get_session",
    "get_session_factory",
    "session_scope",
    "ProgressManager",
    "create_redis_client",
    "get_redis_client",
    "DEFAULT_NAMESPACE",
    "DEFAULT_PROGRESS_TTL_SECONDS",
]
