"""Tests for the SQLite-backed local cache."""

import json
import sqlite3

import pytest

from src.local_cache import LocalCache
from src.models import attribute, create_envelope


def _env(ts: int, level: str = "info", message: str = "m", actor_id=None):
    env = create_envelope(level, "App", message, {"ts": ts}, session_id="s1", timestamp=ts)
    if actor_id:
        env = attribute(env, actor_id)
    return env


class TestAppend:
    def test_append_returns_increasing_keys(self, cache):
        first = cache.append(_env(1))
        second = cache.append(_env(2))
        assert second > first
        assert cache.count() == 2

    def test_round_trips_fields(self, cache):
        env = _env(5, level="error", actor_id="user-1")
        cache.append(env)
        (record,) = cache.get_all()
        assert record.envelope == env

    def test_lazy_open_creates_parent_dirs(self, tmp_path):
        local = LocalCache(str(tmp_path / "nested" / "dir" / "logs.db"))
        local.append(_env(1))
        assert local.count() == 1
        local.close()

    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "logs.db")
        local = LocalCache(path)
        local.append(_env(1))
        local.close()

        reopened = LocalCache(path)
        assert reopened.count() == 1
        reopened.close()


class TestClose:
    def test_operations_fail_after_close(self, tmp_path):
        local = LocalCache(str(tmp_path / "logs.db"))
        local.append(_env(1))
        local.close()

        with pytest.raises(sqlite3.ProgrammingError):
            local.append(_env(2))
        with pytest.raises(sqlite3.ProgrammingError):
            local.delete_older_than(100)
        assert local.closed

    def test_open_after_close_resumes(self, tmp_path):
        local = LocalCache(str(tmp_path / "logs.db"))
        local.append(_env(1))
        local.close()
        local.open()

        local.append(_env(2))
        assert local.count() == 2
        local.close()


class TestQueries:
    def test_get_recent_is_newest_first_and_limited(self, cache):
        for ts in (10, 30, 20):
            cache.append(_env(ts))
        recent = cache.get_recent(2)
        assert [r.envelope.timestamp for r in recent] == [30, 20]

    def test_get_all_in_insertion_order(self, cache):
        for ts in (10, 30, 20):
            cache.append(_env(ts))
        assert [r.envelope.timestamp for r in cache.get_all()] == [10, 30, 20]


class TestDeleteOlderThan:
    def test_cutoff_is_strict(self, cache):
        for ts in (99, 100, 101):
            cache.append(_env(ts))

        deleted = cache.delete_older_than(100)

        assert deleted == 1
        assert sorted(r.envelope.timestamp for r in cache.get_all()) == [100, 101]

    def test_deletes_in_chunks(self, tmp_path):
        local = LocalCache(str(tmp_path / "logs.db"), delete_chunk=3)
        for ts in range(10):
            local.append(_env(ts))

        assert local.delete_older_than(8) == 8
        assert [r.envelope.timestamp for r in local.get_all()] == [8, 9]
        local.close()

    def test_rejects_non_positive_chunk(self):
        with pytest.raises(ValueError):
            LocalCache(delete_chunk=0)

    def test_nothing_to_delete(self, cache):
        cache.append(_env(500))
        assert cache.delete_older_than(100) == 0


class TestExportImport:
    def test_export_is_newest_first_json_array(self, cache):
        cache.append(_env(1))
        cache.append(_env(2))
        items = json.loads(cache.export_json())
        assert [item["timestamp"] for item in items] == [2, 1]
        assert {"id", "level", "category", "message", "data", "session_id"} <= set(items[0])

    def test_export_limit(self, cache):
        for ts in range(5):
            cache.append(_env(ts))
        assert len(json.loads(cache.export_json(limit=2))) == 2

    def test_import_restores_records_with_fresh_keys(self, cache, tmp_path):
        cache.append(_env(1, level="warn"))
        cache.append(_env(2, level="error", actor_id="user-1"))
        document = cache.export_json()

        other = LocalCache(str(tmp_path / "other.db"))
        other.append(_env(0))
        added = other.import_json(document)

        assert added == 2
        assert other.count() == 3
        restored = {r.envelope.timestamp: r.envelope for r in other.get_all()}
        assert restored[2].actor_id == "user-1"
        assert restored[1].level.value == "warn"
        other.close()

    def test_import_rejects_non_array(self, cache):
        with pytest.raises(ValueError):
            cache.import_json('{"not": "a list"}')
