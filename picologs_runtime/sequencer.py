"""Deduplication and ordering of log sets."""

from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Iterable

from picologs_runtime.types import Log, parse_iso


@lru_cache(maxsize=8192)
def timestamp_key(timestamp: str) -> datetime:
    return parse_iso(timestamp)


def dedupe_and_sort(logs: Iterable[Log]) -> list[Log]:
    """Keep the first occurrence of each id, then stable-sort by timestamp.

    Idempotent, and merging two deduped sets is just
    ``dedupe_and_sort([*a, *b])``.
    """
    seen: set[str] = set()
    deduped: list[Log] = []
    for log in logs:
        if log.id in seen:
            continue
        seen.add(log.id)
        deduped.append(log)
    deduped.sort(key=lambda log: timestamp_key(log.timestamp))
    return deduped


def apply_retention(logs: list[Log], max_logs: int) -> list[Log]:
    """Drop the oldest entries of a sorted list beyond ``max_logs``."""
    if max_logs <= 0 or len(logs) <= max_logs:
        return logs
    return logs[-max_logs:]
