"""Event envelope model, severity levels, and record conversion helpers."""

import copy
import random
import string
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Optional


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]

    def __lt__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank >= other.rank


# Severity order (higher = more severe)
_LEVEL_RANKS = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARN: 2,
    LogLevel.ERROR: 3,
}


def parse_level(value) -> LogLevel:
    """Accept a LogLevel or a level name such as "warn" / "WARNING"."""
    if isinstance(value, LogLevel):
        return value
    name = str(value).strip().lower()
    if name == "warning":
        name = "warn"
    return LogLevel(name)


DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_session_id() -> str:
    """Produce IDs like 'session_1718000000000_k3j9x0a2b'."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=9))
    return f"session_{now_ms()}_{suffix}"


# One id per running process
SESSION_ID = generate_session_id()


@dataclass(frozen=True)
class Envelope:
    timestamp: int
    session_id: str
    level: LogLevel
    category: str
    message: str
    data: Mapping = field(default_factory=dict)
    actor_id: Optional[str] = None

    def __post_init__(self):
        # Write-once: later changes to the caller's payload never reach the envelope
        object.__setattr__(self, "data", _freeze(dict(self.data)))


def _freeze(value):
    """Read-only deep copy of a JSON-like value."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return copy.deepcopy(value)


def _thaw(value):
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return copy.deepcopy(value)


def plain_data(envelope: "Envelope") -> dict:
    """Mutable, JSON-ready copy of the envelope payload."""
    return _thaw(envelope.data)


def create_envelope(
    level,
    category: str,
    message: str,
    data: Optional[dict] = None,
    session_id: str = SESSION_ID,
    timestamp: Optional[int] = None,
) -> Envelope:
    """Factory function that creates an unattributed Envelope."""
    return Envelope(
        timestamp=timestamp if timestamp is not None else now_ms(),
        session_id=session_id,
        level=parse_level(level),
        category=str(category),
        message=str(message),
        data=data or {},
    )


def attribute(envelope: Envelope, actor_id: str) -> Envelope:
    """Return a copy of *envelope* bound to *actor_id*."""
    return replace(envelope, actor_id=actor_id)


def envelope_to_dict(envelope: Envelope) -> dict:
    """Convert an Envelope to a plain JSON-ready dictionary."""
    return {
        "timestamp": envelope.timestamp,
        "session_id": envelope.session_id,
        "level": envelope.level.value,
        "category": envelope.category,
        "message": envelope.message,
        "data": plain_data(envelope),
        "actor_id": envelope.actor_id,
    }


def envelope_from_dict(record: dict) -> Envelope:
    """Rebuild an Envelope from a dict produced by envelope_to_dict.

    Extra keys added by storage layers (id, record_id, server_timestamp)
    are ignored.
    """
    return Envelope(
        timestamp=int(record["timestamp"]),
        session_id=record["session_id"],
        level=parse_level(record["level"]),
        category=record.get("category", ""),
        message=record.get("message", ""),
        data=dict(record.get("data") or {}),
        actor_id=record.get("actor_id"),
    )
