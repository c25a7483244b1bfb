"""Local durable cache: append-only SQLite table of envelopes.

Each row is an envelope plus an auto-incrementing sequence key. Rows are
never updated; the retention sweep deletes them in bulk by timestamp.
"""

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Iterable

from src.models import Envelope, envelope_from_dict, envelope_to_dict, plain_data

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    session_id TEXT NOT NULL,
    level TEXT NOT NULL,
    category TEXT NOT NULL,
    message TEXT NOT NULL,
    data TEXT NOT NULL,
    actor_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON logs (timestamp);
CREATE INDEX IF NOT EXISTS idx_logs_level ON logs (level);
CREATE INDEX IF NOT EXISTS idx_logs_session ON logs (session_id);
"""

_COLUMNS = "id, timestamp, session_id, level, category, message, data, actor_id"


@dataclass(frozen=True)
class CachedRecord:
    id: int
    envelope: Envelope


def record_to_dict(record: CachedRecord) -> dict:
    result = envelope_to_dict(record.envelope)
    result["id"] = record.id
    return result


class LocalCache:
    """SQLite-backed append log of envelopes.

    The connection is opened lazily and shared across threads; every
    statement runs under one lock so calls from ``asyncio.to_thread``
    workers and from the event loop never interleave. Bulk deletes run in
    chunks of ``delete_chunk`` rows and release the lock between chunks,
    so an append from the event loop waits for at most one chunk.

    After ``close()`` every operation raises ``sqlite3.ProgrammingError``
    until ``open()`` is called again.
    """

    def __init__(self, path: str = ":memory:", delete_chunk: int = 500):
        if delete_chunk <= 0:
            raise ValueError("delete_chunk must be positive")
        self._path = path
        self._delete_chunk = delete_chunk
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    def open(self) -> None:
        with self._lock:
            self._closed = False
            self._ensure_open()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> sqlite3.Connection:
        if self._closed:
            raise sqlite3.ProgrammingError(f"local cache {self._path} is closed")
        if self._conn is None:
            if self._path != ":memory:":
                parent = os.path.dirname(os.path.abspath(self._path))
                os.makedirs(parent, exist_ok=True)
            conn = sqlite3.connect(self._path, check_same_thread=False)
            conn.executescript(_SCHEMA)
            self._conn = conn
            logger.debug("Opened local cache at %s", self._path)
        return self._conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, envelope: Envelope) -> int:
        """Insert one envelope and return its sequence key."""
        row = (
            envelope.timestamp,
            envelope.session_id,
            envelope.level.value,
            envelope.category,
            envelope.message,
            json.dumps(plain_data(envelope)),
            envelope.actor_id,
        )
        with self._lock:
            conn = self._ensure_open()
            with conn:
                cursor = conn.execute(
                    "INSERT INTO logs (timestamp, session_id, level, category, "
                    "message, data, actor_id) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    row,
                )
            return cursor.lastrowid

    def delete_older_than(self, cutoff_ms: int) -> int:
        """Delete every record with timestamp strictly before *cutoff_ms*."""
        deleted = 0
        while True:
            with self._lock:
                conn = self._ensure_open()
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM logs WHERE id IN "
                        "(SELECT id FROM logs WHERE timestamp < ? LIMIT ?)",
                        (cutoff_ms, self._delete_chunk),
                    )
                removed = cursor.rowcount
            deleted += removed
            if removed < self._delete_chunk:
                break
        if deleted > 0:
            logger.info("Cleaned up %d old log entries from local cache", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_recent(self, limit: int = 1000) -> list[CachedRecord]:
        """Newest-first records, at most *limit* of them."""
        with self._lock:
            conn = self._ensure_open()
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM logs ORDER BY timestamp DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_all(self) -> list[CachedRecord]:
        """All records in insertion order."""
        with self._lock:
            conn = self._ensure_open()
            rows = conn.execute(f"SELECT {_COLUMNS} FROM logs ORDER BY id").fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._lock:
            conn = self._ensure_open()
            (total,) = conn.execute("SELECT COUNT(*) FROM logs").fetchone()
        return total

    @staticmethod
    def _row_to_record(row) -> CachedRecord:
        record_id, timestamp, session_id, level, category, message, data, actor_id = row
        envelope = envelope_from_dict({
            "timestamp": timestamp,
            "session_id": session_id,
            "level": level,
            "category": category,
            "message": message,
            "data": json.loads(data),
            "actor_id": actor_id,
        })
        return CachedRecord(id=record_id, envelope=envelope)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_json(self, limit: int | None = None) -> str:
        """Serialize records (newest first) as a pretty-printed JSON array."""
        records = self.get_recent(limit) if limit is not None else self.get_all()[::-1]
        return json.dumps([record_to_dict(r) for r in records], indent=2)

    def import_json(self, document: str) -> int:
        """Re-ingest a document produced by export_json. Returns rows added.

        Sequence keys from the document are not reused; every row gets a
        fresh key.
        """
        items = json.loads(document)
        if not isinstance(items, list):
            raise ValueError("export document must be a JSON array")
        return self.extend(envelope_from_dict(item) for item in items)

    def extend(self, envelopes: Iterable[Envelope]) -> int:
        added = 0
        for envelope in envelopes:
            self.append(envelope)
            added += 1
        return added
