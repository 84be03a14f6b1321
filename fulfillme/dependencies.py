"""
Dependency wiring for the FastAPI app and the sync client.
"""

from __future__ import annotations

from fulfillme.config import get_settings
from fulfillme.db import DbClient, InMemoryDbClient, SqlDbClient
from fulfillme.queue import (
    InMemoryNeedQueue,
    OfflineNeedQueue,
    RedisNeedQueue,
    SqliteNeedQueue,
)

_db_client: DbClient | None = None
_offline_queue: OfflineNeedQueue | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so records persist across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_offline_queue() -> OfflineNeedQueue:
    """
    Return a singleton offline queue for the sync client.
    """
    global _offline_queue
    if _offline_queue:
        return _offline_queue

    settings = get_settings()
    if settings.use_in_memory_backends:
        _offline_queue = InMemoryNeedQueue()
    elif settings.redis_url:
        _offline_queue = RedisNeedQueue(
            url=settings.redis_url,
            queue_key=settings.offline_queue_key,
        )
    else:
        _offline_queue = SqliteNeedQueue(settings.offline_queue_path)
    return _offline_queue
