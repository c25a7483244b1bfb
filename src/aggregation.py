"""Aggregation engine: issue groups, severity counts and actor impact over a window."""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Callable, Iterable

from src.models import DAY_MS, now_ms
from src.remote_store import RemoteStore

logger = logging.getLogger(__name__)

WINDOW_PRESETS = (1, 7, 14, 30)

# Exact, case-sensitive category names per issue bucket
ISSUE_BUCKETS = {
    "auth_issues": frozenset({"Auth"}),
    "network_issues": frozenset({"Network"}),
    "sync_issues": frozenset({"Sync", "Storage"}),
}

ISSUE_LEVELS = frozenset({"warn", "error"})


@dataclass
class IssueGroup:
    category: str
    message: str
    level: str
    count: int = 0
    affected_actors: int = 0
    first_seen: int = 0
    last_seen: int = 0
    examples: list[dict] = field(default_factory=list)


@dataclass
class AggregateStats:
    total_logs: int = 0
    total_actors: int = 0
    total_errors: int = 0
    total_warnings: int = 0
    auth_issues: int = 0
    network_issues: int = 0
    sync_issues: int = 0


@dataclass
class AggregateReport:
    generated_at: int
    window_days: int
    stats: AggregateStats
    common_issues: list[IssueGroup] = field(default_factory=list)
    recent_errors: list[dict] = field(default_factory=list)


def validate_window(window_days: int) -> int:
    if window_days not in WINDOW_PRESETS:
        raise ValueError(
            f"window must be one of {WINDOW_PRESETS} days, got {window_days!r}"
        )
    return window_days


def flatten_corpus(tree: dict, start_ms: int | None = None, end_ms: int | None = None) -> list[dict]:
    """Full scan of ``{actor: {session: {record_id: record}}}``.

    Returns every record with ``start_ms <= timestamp <= end_ms`` (either
    bound may be None), tagged with actor_id, session_id and record_id, newest first.
    """
    records = []
    for actor_id, sessions in tree.items():
        for session_id, session_records in (sessions or {}).items():
            for record_id, record in (session_records or {}).items():
                timestamp = int(record.get("timestamp", 0))
                if start_ms is not None and timestamp < start_ms:
                    continue
                if end_ms is not None and timestamp > end_ms:
                    continue
                tagged = dict(record)
                tagged["actor_id"] = actor_id
                tagged["session_id"] = session_id
                tagged["record_id"] = record_id
                records.append(tagged)

    records.sort(key=lambda r: r["timestamp"], reverse=True)
    return records


def compute_stats(records: list[dict]) -> AggregateStats:
    level_counter = Counter(r.get("level") for r in records)
    bucket_counts = {name: 0 for name in ISSUE_BUCKETS}

    for record in records:
        if record.get("level") not in ISSUE_LEVELS:
            continue
        category = record.get("category")
        for name, categories in ISSUE_BUCKETS.items():
            if category in categories:
                bucket_counts[name] += 1

    return AggregateStats(
        total_logs=len(records),
        total_actors=len({r.get("actor_id") for r in records}),
        total_errors=level_counter["error"],
        total_warnings=level_counter["warn"],
        **bucket_counts,
    )


def group_issues(records: Iterable[dict], max_examples: int = 3) -> list[IssueGroup]:
    """Group warn/error records by (category, message), largest groups first.

    *records* are expected newest first, so the kept examples are the most
    recent occurrences of each issue.
    """
    groups: dict[tuple[str, str], IssueGroup] = {}
    actors: dict[tuple[str, str], set] = {}

    for record in records:
        level = record.get("level")
        if level not in ISSUE_LEVELS:
            continue
        key = (record.get("category", ""), record.get("message", ""))
        timestamp = int(record["timestamp"])

        group = groups.get(key)
        if group is None:
            group = IssueGroup(
                category=key[0],
                message=key[1],
                level=level,
                first_seen=timestamp,
                last_seen=timestamp,
            )
            groups[key] = group
            actors[key] = set()

        group.count += 1
        actors[key].add(record.get("actor_id"))
        group.first_seen = min(group.first_seen, timestamp)
        group.last_seen = max(group.last_seen, timestamp)
        if level == "error":
            group.level = "error"
        if len(group.examples) < max_examples:
            group.examples.append(record)

    for key, group in groups.items():
        group.affected_actors = len(actors[key])

    return sorted(groups.values(), key=lambda g: g.count, reverse=True)


def analyze(
    records: list[dict],
    window_days: int,
    generated_at: int | None = None,
    top_issues: int = 10,
    recent_errors: int = 20,
    max_examples: int = 3,
) -> AggregateReport:
    """Build a report from records already sorted newest first."""
    errors = [r for r in records if r.get("level") == "error"]
    return AggregateReport(
        generated_at=generated_at if generated_at is not None else now_ms(),
        window_days=window_days,
        stats=compute_stats(records),
        common_issues=group_issues(records, max_examples)[:top_issues],
        recent_errors=errors[:recent_errors],
    )


class AggregationEngine:
    """Reads the whole remote corpus for a window and summarizes it.

    Requires a caller holding the all-logs read privilege; the store raises
    AccessDenied otherwise.
    """

    def __init__(
        self,
        store: RemoteStore,
        clock: Callable[[], int] = now_ms,
        top_issues: int = 10,
        recent_errors: int = 20,
    ):
        self._store = store
        self._clock = clock
        self._top_issues = top_issues
        self._recent_errors = recent_errors

    async def run(self, caller: str, window_days: int) -> AggregateReport:
        validate_window(window_days)
        now = self._clock()
        tree = await self._store.read_all(caller)
        records = flatten_corpus(tree, now - window_days * DAY_MS)
        logger.info(
            "Aggregating %d record(s) over the last %d day(s)", len(records), window_days
        )
        return analyze(
            records,
            window_days,
            generated_at=now,
            top_issues=self._top_issues,
            recent_errors=self._recent_errors,
        )


def empty_report(window_days: int, generated_at: int | None = None) -> AggregateReport:
    return AggregateReport(
        generated_at=generated_at if generated_at is not None else now_ms(),
        window_days=window_days,
        stats=AggregateStats(),
    )


# ------------------------------------------------------------------
# Serialization
# ------------------------------------------------------------------

def _iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


def report_to_dict(report: AggregateReport) -> dict:
    """Full, lossless dictionary form of a report."""
    return asdict(report)


def export_report(report: AggregateReport) -> str:
    """Render the downloadable analysis document.

    Issue examples are reduced to their time, actor and payload.
    """
    document = {
        "generated_at": _iso(report.generated_at),
        "date_range": f"Last {report.window_days} days",
        "stats": asdict(report.stats),
        "common_issues": [
            {
                **{k: v for k, v in asdict(issue).items() if k != "examples"},
                "last_seen": _iso(issue.last_seen),
                "first_seen": _iso(issue.first_seen),
                "examples": [
                    {
                        "timestamp": _iso(int(ex["timestamp"])),
                        "actor_id": ex.get("actor_id"),
                        "data": ex.get("data", {}),
                    }
                    for ex in issue.examples
                ],
            }
            for issue in report.common_issues
        ],
        "recent_errors": report.recent_errors,
    }
    return json.dumps(document, indent=2)
