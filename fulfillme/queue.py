"""
Durable queue of needs posted while a device is offline.

Entries are keyed by a client-generated id and kept in insertion order. An
in-memory queue serves tests/local runs, a SQLite file keeps entries on the
device across restarts, and a Redis-backed queue lets several agents share
one backlog.
"""

from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis


@dataclass
class QueuedNeed:
    entry_id: str
    payload: dict
    created_at: float = field(default_factory=lambda: time.time())


class OfflineNeedQueue(Protocol):
    """Minimal FIFO interface used by the sync client."""

    def put(self, payload: dict, entry_id: Optional[str] = None) -> QueuedNeed:
        ...

    def pending(self) -> list[QueuedNeed]:
        ...

    def remove(self, entry_id: str) -> None:
        ...


@dataclass
class InMemoryNeedQueue:
    """Simple FIFO queue for testing/dev."""

    items: list[QueuedNeed] = field(default_factory=list)

    def put(self, payload: dict, entry_id: Optional[str] = None) -> QueuedNeed:
        entry = QueuedNeed(entry_id=entry_id or uuid.uuid4().hex, payload=dict(payload))
        self.items = [item for item in self.items if item.entry_id != entry.entry_id]
        self.items.append(entry)
        return entry

    def pending(self) -> list[QueuedNeed]:
        return list(self.items)

    def remove(self, entry_id: str) -> None:
        self.items = [item for item in self.items if item.entry_id != entry_id]


class SqliteNeedQueue:
    """Queue persisted to a local SQLite file."""

    def __init__(self, path: str):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.path = path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS offline_needs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL UNIQUE,
                    payload TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )

    def put(self, payload: dict, entry_id: Optional[str] = None) -> QueuedNeed:
        entry = QueuedNeed(entry_id=entry_id or uuid.uuid4().hex, payload=dict(payload))
        with self._connect() as conn:
            conn.execute("DELETE FROM offline_needs WHERE entry_id = ?", (entry.entry_id,))
            conn.execute(
                "INSERT INTO offline_needs (entry_id, payload, created_at) VALUES (?, ?, ?)",
                (entry.entry_id, json.dumps(entry.payload), entry.created_at),
            )
        return entry

    def pending(self) -> list[QueuedNeed]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, payload, created_at FROM offline_needs ORDER BY seq ASC"
            ).fetchall()
        return [
            QueuedNeed(
                entry_id=row["entry_id"],
                payload=json.loads(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def remove(self, entry_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM offline_needs WHERE entry_id = ?", (entry_id,))


@dataclass
class RedisNeedQueue:
    """Redis-backed queue: a list keeps the order, a hash holds the payloads."""

    url: str
    queue_key: str = "fulfillme:offline-needs"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    @property
    def _payload_key(self) -> str:
        return f"{self.queue_key}:payloads"

    def put(self, payload: dict, entry_id: Optional[str] = None) -> QueuedNeed:
        entry = QueuedNeed(entry_id=entry_id or uuid.uuid4().hex, payload=dict(payload))
        record = json.dumps({"payload": entry.payload, "created_at": entry.created_at})
        pipe = self.client.pipeline()
        pipe.lrem(self.queue_key, 0, entry.entry_id)
        pipe.rpush(self.queue_key, entry.entry_id)
        pipe.hset(self._payload_key, entry.entry_id, record)
        pipe.execute()
        return entry

    def pending(self) -> list[QueuedNeed]:
        entry_ids = [e.decode("utf-8") for e in self.client.lrange(self.queue_key, 0, -1)]
        if not entry_ids:
            return []
        records = self.client.hmget(self._payload_key, entry_ids)
        entries = []
        for entry_id, raw in zip(entry_ids, records):
            if raw is None:
                # Order entry without payload; removed by another agent mid-read.
                continue
            data = json.loads(raw)
            entries.append(
                QueuedNeed(
                    entry_id=entry_id,
                    payload=data["payload"],
                    created_at=data.get("created_at", 0.0),
                )
            )
        return entries

    def remove(self, entry_id: str) -> None:
        pipe = self.client.pipeline()
        pipe.lrem(self.queue_key, 0, entry_id)
        pipe.hdel(self._payload_key, entry_id)
        pipe.execute()
