"""Tests for the envelope model and level helpers."""

import re

import pytest

from src.models import (
    Envelope,
    LogLevel,
    attribute,
    create_envelope,
    envelope_from_dict,
    envelope_to_dict,
    generate_session_id,
    parse_level,
)
from src.ring_buffer import RingBuffer


class TestLogLevel:
    def test_severity_order(self):
        assert LogLevel.DEBUG < LogLevel.INFO < LogLevel.WARN < LogLevel.ERROR

    def test_ge_and_le(self):
        assert LogLevel.ERROR >= LogLevel.WARN
        assert LogLevel.WARN <= LogLevel.WARN

    def test_values_are_lowercase_names(self):
        assert [level.value for level in LogLevel] == ["debug", "info", "warn", "error"]

    @pytest.mark.parametrize("raw,expected", [
        ("debug", LogLevel.DEBUG),
        ("INFO", LogLevel.INFO),
        ("warning", LogLevel.WARN),
        (" Error ", LogLevel.ERROR),
        (LogLevel.WARN, LogLevel.WARN),
    ])
    def test_parse_level(self, raw, expected):
        assert parse_level(raw) is expected

    def test_parse_level_rejects_unknown(self):
        with pytest.raises(ValueError):
            parse_level("fatal")


class TestSessionId:
    def test_format(self):
        assert re.fullmatch(r"session_\d+_[a-z0-9]{9}", generate_session_id())

    def test_unique(self):
        assert generate_session_id() != generate_session_id()


class TestEnvelope:
    def test_create_envelope_is_unattributed(self):
        env = create_envelope("info", "App", "started", {"k": 1}, session_id="s1", timestamp=5)
        assert env == Envelope(5, "s1", LogLevel.INFO, "App", "started", {"k": 1}, None)

    def test_create_envelope_copies_data(self):
        data = {"k": 1}
        env = create_envelope("info", "App", "m", data)
        data["k"] = 2
        assert env.data == {"k": 1}

    def test_payload_changes_after_creation_do_not_leak(self):
        payload = {"req": {"url": "/items", "tags": ["a"]}}
        env = create_envelope("info", "Network", "request", payload)
        buf = RingBuffer(5)
        buf.append(env)

        payload["req"]["url"] = "/changed"
        payload["req"]["tags"].append("b")
        payload["added"] = 1

        (stored,) = buf.snapshot()
        assert envelope_to_dict(stored)["data"] == {"req": {"url": "/items", "tags": ["a"]}}

    def test_payload_is_read_only(self):
        env = create_envelope("info", "Network", "request", {"req": {"url": "/items"}})
        with pytest.raises(TypeError):
            env.data["added"] = 1
        with pytest.raises(TypeError):
            env.data["req"]["url"] = "/changed"

    def test_to_dict_returns_mutable_copy(self):
        env = create_envelope("info", "App", "m", {"k": {"n": 1}})
        record = envelope_to_dict(env)
        record["data"]["k"]["n"] = 2
        assert env.data["k"]["n"] == 1

    def test_none_data_becomes_empty_dict(self):
        assert create_envelope("warn", "App", "m").data == {}

    def test_envelope_is_frozen(self):
        env = create_envelope("info", "App", "m")
        with pytest.raises(AttributeError):
            env.message = "changed"

    def test_attribute_returns_bound_copy(self):
        env = create_envelope("info", "App", "m")
        bound = attribute(env, "user-1")
        assert bound.actor_id == "user-1"
        assert env.actor_id is None
        assert bound.timestamp == env.timestamp


class TestDictConversion:
    def test_to_dict_uses_level_value(self):
        env = create_envelope("error", "Auth", "denied", session_id="s", timestamp=1)
        record = envelope_to_dict(env)
        assert record["level"] == "error"
        assert record["actor_id"] is None

    def test_from_dict_ignores_storage_keys(self):
        record = {
            "timestamp": 10,
            "session_id": "s",
            "level": "warn",
            "category": "Sync",
            "message": "slow",
            "data": {"n": 1},
            "actor_id": "a",
            "record_id": "r1",
            "server_timestamp": 11,
            "id": 3,
        }
        env = envelope_from_dict(record)
        assert env.level is LogLevel.WARN
        assert env.actor_id == "a"
        assert env.data == {"n": 1}

    def test_from_dict_tolerates_missing_optional_fields(self):
        env = envelope_from_dict({"timestamp": "7", "session_id": "s", "level": "info"})
        assert env.timestamp == 7
        assert env.category == ""
        assert env.data == {}
