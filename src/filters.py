"""Viewer filter predicates: level, category, free-text search."""

import json
from typing import Callable, Iterable, Optional, Union

from src.models import Envelope, envelope_to_dict

Record = Union[Envelope, dict]


def _as_dict(record: Record) -> dict:
    if isinstance(record, Envelope):
        return envelope_to_dict(record)
    return record


def filter_by_level(record: Record, level: str) -> bool:
    """True if the record's level equals *level* exactly."""
    return _as_dict(record).get("level") == level


def filter_by_category(record: Record, category: str) -> bool:
    """True if the record's category equals *category* exactly."""
    return _as_dict(record).get("category") == category


def filter_by_search(record: Record, term: str) -> bool:
    """True if *term* appears in the message, category, or payload (case-insensitive)."""
    item = _as_dict(record)
    needle = term.lower()
    if needle in str(item.get("message", "")).lower():
        return True
    if needle in str(item.get("category", "")).lower():
        return True
    return needle in json.dumps(item.get("data", {}), default=str).lower()


def build_filter_chain(
    level: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
) -> Callable[[Record], bool]:
    """AND together the active filters. "all" or None disables a filter."""
    predicates = []

    if level and level != "all":
        predicates.append(lambda r, l=level: filter_by_level(r, l))

    if category and category != "all":
        predicates.append(lambda r, c=category: filter_by_category(r, c))

    if search:
        predicates.append(lambda r, s=search: filter_by_search(r, s))

    if not predicates:
        return lambda record: True

    def combined(record: Record) -> bool:
        return all(p(record) for p in predicates)

    return combined


def apply_filters(records: Iterable[Record], **criteria) -> list:
    predicate = build_filter_chain(**criteria)
    return [r for r in records if predicate(r)]


def categories(records: Iterable[Record]) -> list[str]:
    """Distinct categories in first-seen order."""
    seen: dict[str, None] = {}
    for record in records:
        seen.setdefault(_as_dict(record).get("category", ""), None)
    return list(seen)
