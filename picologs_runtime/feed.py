"""
The canonical event set.

``LogFeed`` is the only writer of the event set. Local ingestion, remote
batches, sync pages and clear-log all go through it, one mutation at a time.
After each mutation the flat set is deduplicated, sorted, capped, mirrored to
the store, and the spree-aggregated ``view`` is rebuilt from it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Iterable

from pydantic import ValidationError

from picologs_runtime.aggregator import flatten_sprees, group_killing_sprees
from picologs_runtime.sequencer import apply_retention, dedupe_and_sort, timestamp_key
from picologs_runtime.store import KeyValueStore
from picologs_runtime.types import Log, SpreeConfig, utc_now_iso

logger = logging.getLogger(__name__)

LOGS_KEY = "logs"
CUTOFF_KEY = "only_process_after"


class LogFeed:
    """Single owner of the event set, serialized behind one lock."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_logs: int = 1000,
        spree_config: SpreeConfig | None = None,
    ) -> None:
        self._store = store
        self._max_logs = max_logs
        self._spree = spree_config or SpreeConfig()
        self._lock = asyncio.Lock()
        self._logs: list[Log] = []
        self.view: list[Log] = []
        self.only_process_after: str | None = None

    @property
    def logs(self) -> list[Log]:
        """The flat canonical set, sorted by timestamp."""
        return list(self._logs)

    def snapshot(self) -> list[Log]:
        """The aggregated view, sprees folded."""
        return list(self.view)

    def __len__(self) -> int:
        return len(self._logs)

    def __contains__(self, log_id: object) -> bool:
        return any(log.id == log_id for log in self._logs)

    async def load(self) -> list[Log]:
        """Restore the persisted set and clear-log cutoff."""
        async with self._lock:
            cutoff = await self._store.get(CUTOFF_KEY)
            self.only_process_after = cutoff if isinstance(cutoff, str) else None

            stored = await self._store.get(LOGS_KEY) or []
            restored: list[Log] = []
            skipped = 0
            for raw in stored if isinstance(stored, list) else []:
                try:
                    restored.append(Log.model_validate(raw))
                except ValidationError:
                    skipped += 1
            if skipped:
                logger.warning("Skipped %d unreadable stored log(s)", skipped)

            self._logs = []
            self._rebuild(restored)
            logger.info("Loaded %d stored log(s)", len(self._logs))
            return self.snapshot()

    async def add_local(self, logs: Iterable[Log]) -> list[Log]:
        """Add freshly classified local events.

        Events stamped before the clear-log cutoff are dropped.

        Returns:
            The events that were not already in the set, in input order.
        """
        async with self._lock:
            cutoff = timestamp_key(self.only_process_after) if self.only_process_after else None
            known = {log.id for log in self._logs}
            fresh: list[Log] = []
            for log in logs:
                if cutoff is not None and timestamp_key(log.timestamp) < cutoff:
                    continue
                if log.id not in known:
                    known.add(log.id)
                    fresh.append(log)
            if fresh:
                await self._commit([*self._logs, *fresh])
            return fresh

    async def merge_remote(self, logs: Iterable[Log], sender_id: str | None = None) -> int:
        """Merge events received from a peer.

        Events already present locally win. Events lacking a source user are
        attributed to ``sender_id``.

        Returns:
            How many events were added.
        """
        incoming = flatten_sprees(logs)
        if sender_id:
            incoming = [
                log if log.user_id else log.model_copy(update={"user_id": sender_id})
                for log in incoming
            ]
        async with self._lock:
            before = {log.id for log in self._logs}
            added = len({log.id for log in incoming} - before)
            if added:
                await self._commit([*self._logs, *incoming])
            return added

    async def reset(self) -> None:
        """Drop the in-memory set after the log file was truncated or rotated."""
        async with self._lock:
            self._logs = []
            self.view = []
            logger.info("Event set reset")

    async def clear(self) -> str:
        """Clear the set and ignore every line stamped before now.

        Returns:
            The new cutoff timestamp.
        """
        async with self._lock:
            cutoff = utc_now_iso()
            self.only_process_after = cutoff
            self._logs = []
            self.view = []
            await self._store.set(CUTOFF_KEY, cutoff)
            await self._store.set(LOGS_KEY, [])
            logger.info("Logs cleared; ignoring lines before %s", cutoff)
            return cutoff

    def since(self, cursor: str | None) -> list[Log]:
        """Events stamped strictly after ``cursor`` (all when ``None``)."""
        if cursor is None:
            return self.logs
        mark = timestamp_key(cursor)
        return [log for log in self._logs if timestamp_key(log.timestamp) > mark]

    async def _commit(self, logs: list[Log]) -> None:
        self._rebuild(logs)
        await self._store.set(LOGS_KEY, [self._dump(log) for log in self._logs])

    def _rebuild(self, logs: list[Log]) -> None:
        ordered = dedupe_and_sort(flatten_sprees(logs))
        self._logs = apply_retention(ordered, self._max_logs)
        self.view = group_killing_sprees(
            self._logs,
            timedelta(milliseconds=self._spree.window_ms),
            self._spree.excluded_damage_types,
        )

    @staticmethod
    def _dump(log: Log) -> dict[str, Any]:
        return log.model_dump(by_alias=True, exclude_none=True)
