"""
Catch-up sync between peers.

When a peer comes online we send it every event newer than the last time we
synced with it, then move that peer's cursor to now. Incoming sync pages are
merged through the feed the same way. Cursors are kept per peer in the store;
writes are debounced.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

from picologs_runtime.errors import TransportError
from picologs_runtime.feed import LogFeed
from picologs_runtime.store import KeyValueStore
from picologs_runtime.types import utc_now_iso
from picologs_runtime.validation import SyncLogsMessage

logger = logging.getLogger(__name__)

CURSORS_KEY = "sync_cursors"

SendFn = Callable[[dict[str, Any]], Awaitable[None]]


class SyncReconciler:
    """Tracks one sync cursor per peer and exchanges missed events."""

    def __init__(
        self,
        feed: LogFeed,
        send: SendFn,
        store: KeyValueStore,
        *,
        page_size: int = 100,
        persist_delay: float = 1.0,
    ) -> None:
        self._feed = feed
        self._send = send
        self._store = store
        self._page_size = page_size
        self._persist_delay = persist_delay
        self._cursors: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._persist_task: asyncio.Task[None] | None = None

    @property
    def cursors(self) -> dict[str, str]:
        return dict(self._cursors)

    async def load(self) -> None:
        stored = await self._store.get(CURSORS_KEY)
        if isinstance(stored, dict):
            self._cursors = {str(k): v for k, v in stored.items() if isinstance(v, str)}
        logger.debug("Loaded %d sync cursor(s)", len(self._cursors))

    def cursor_for(self, peer_id: str) -> str | None:
        return self._cursors.get(peer_id)

    async def on_peer_online(self, peer_id: str) -> int:
        """Send a newly online peer everything since its cursor.

        Returns:
            How many events were sent.
        """
        async with self._locks[peer_id]:
            since = self._cursors.get(peer_id)
            logs = self._feed.since(since)
            message: dict[str, Any] = {
                "type": "sync_logs",
                "targetPeerId": peer_id,
                "logs": [log.to_wire() for log in logs],
                "limit": self._page_size,
                "since": since,
                "offset": 0,
            }

            try:
                await self._send(message)
            except TransportError as exc:
                logger.warning("Sync to %s failed: %s", peer_id, exc)
                return 0

            self._advance(peer_id)
            logger.info("Synced %d log(s) to %s", len(logs), peer_id)
            return len(logs)

    async def handle_sync_payload(self, message: SyncLogsMessage) -> int:
        """Merge a sync page received from a peer.

        Returns:
            How many events were new.
        """
        sender = message.sender_id
        async with self._locks[sender]:
            added = await self._feed.merge_remote(
                [log.to_log() for log in message.logs], sender_id=sender
            )
            self._advance(sender)
            logger.debug("Sync page from %s: %d log(s), %d new", sender, len(message.logs), added)

            if message.has_more:
                limit = message.limit or self._page_size
                await self._request_page(sender, message.offset + limit, limit)
            return added

    async def flush_cursors(self) -> None:
        """Write the cursors now, cancelling any pending debounced write."""
        task = self._persist_task
        self._persist_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        await self._store.set(CURSORS_KEY, dict(self._cursors))

    async def close(self) -> None:
        if self._persist_task is not None:
            await self.flush_cursors()

    async def _request_page(self, peer_id: str, offset: int, limit: int) -> None:
        request: dict[str, Any] = {
            "type": "sync_logs",
            "targetPeerId": peer_id,
            "logs": [],
            "limit": limit,
            "offset": offset,
        }
        try:
            await self._send(request)
        except TransportError as exc:
            logger.warning("Requesting sync page %d from %s failed: %s", offset, peer_id, exc)

    def _advance(self, peer_id: str) -> None:
        self._cursors[peer_id] = utc_now_iso()
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = asyncio.create_task(self._persist_later())

    async def _persist_later(self) -> None:
        await asyncio.sleep(self._persist_delay)
        await self.flush_cursors()
