"""Partitioned record tree ``logs/{actor}/{session}/{record}`` with access rules.

This is the storage core behind the remote log store. Every actor may read
and write only its own partition; actors listed as admins may additionally
read every partition.
"""

import copy
import json
import logging
import os
import threading
import uuid

from src.models import now_ms

logger = logging.getLogger(__name__)


class AccessDenied(Exception):
    """The caller is not allowed to touch the requested partition."""


def generate_record_id(timestamp_ms: int | None = None) -> str:
    """Produce time-ordered IDs like '0001718000000000-3fa2b9c1'."""
    ts = timestamp_ms if timestamp_ms is not None else now_ms()
    return f"{ts:016d}-{uuid.uuid4().hex[:8]}"


class PartitionStore:
    """Thread-safe nested dict of actor -> session -> record_id -> record."""

    def __init__(self, admin_actors=(), state_file: str | None = None):
        self._admins = frozenset(admin_actors)
        self._state_file = state_file or None
        self._tree: dict[str, dict[str, dict[str, dict]]] = {}
        self._lock = threading.Lock()
        if self._state_file:
            self._load()

    def is_admin(self, caller: str | None) -> bool:
        return caller is not None and caller in self._admins

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @staticmethod
    def _check_owner(caller: str | None, actor_id: str) -> None:
        if not caller or caller != actor_id:
            raise AccessDenied(f"{caller!r} may not write partition {actor_id!r}")

    def _check_reader(self, caller: str | None, actor_id: str) -> None:
        if caller and (caller == actor_id or self.is_admin(caller)):
            return
        raise AccessDenied(f"{caller!r} may not read partition {actor_id!r}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def push(self, caller: str | None, actor_id: str, session_id: str, record: dict) -> str:
        """Append *record* under the actor/session and return its record id."""
        self._check_owner(caller, actor_id)
        written = now_ms()
        record_id = generate_record_id(written)
        stored = dict(record)
        stored["server_timestamp"] = written
        with self._lock:
            sessions = self._tree.setdefault(actor_id, {})
            sessions.setdefault(session_id, {})[record_id] = stored
            self._save()
        return record_id

    def read_partition(self, caller: str | None, actor_id: str) -> dict:
        """Deep copy of one actor's sessions, ``{session_id: {record_id: record}}``."""
        self._check_reader(caller, actor_id)
        with self._lock:
            return copy.deepcopy(self._tree.get(actor_id, {}))

    def read_all(self, caller: str | None) -> dict:
        """Deep copy of the whole tree. Requires the all-logs read privilege."""
        if not self.is_admin(caller):
            raise AccessDenied(f"{caller!r} may not read all partitions")
        with self._lock:
            return copy.deepcopy(self._tree)

    def remove_session(self, caller: str | None, actor_id: str, session_id: str) -> bool:
        """Drop an entire session group. Returns False if it did not exist."""
        self._check_owner(caller, actor_id)
        with self._lock:
            sessions = self._tree.get(actor_id, {})
            removed = sessions.pop(session_id, None) is not None
            if not sessions:
                self._tree.pop(actor_id, None)
            if removed:
                self._save()
        return removed

    def record_count(self) -> int:
        with self._lock:
            return sum(
                len(records)
                for sessions in self._tree.values()
                for records in sessions.values()
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        try:
            with open(self._state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.info("State file %s not found, starting empty", self._state_file)
            return
        except json.JSONDecodeError:
            logger.warning("Invalid JSON in %s, starting empty", self._state_file)
            return
        if isinstance(data, dict):
            self._tree = data
            logger.info("Loaded %d record(s) from %s", self.record_count(), self._state_file)

    def _save(self) -> None:
        """Write the tree to the state file. Caller holds the lock."""
        if not self._state_file:
            return
        tmp_path = self._state_file + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._tree, f)
        os.replace(tmp_path, self._state_file)
