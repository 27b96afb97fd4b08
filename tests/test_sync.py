"""
Unit tests for catch-up sync between peers.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from picologs_runtime.feed import LogFeed
from picologs_runtime.store import MemoryStore
from picologs_runtime.sync import CURSORS_KEY, SyncReconciler
from picologs_runtime.types import Log
from picologs_runtime.validation import SyncLogsMessage


def make_log(log_id: str, timestamp: str, user_id: str = "user-1") -> Log:
    return Log(id=log_id, user_id=user_id, emoji="👋", line="quit", timestamp=timestamp)


class Recorder:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def __call__(self, message: dict[str, Any]) -> None:
        self.sent.append(message)


async def make_reconciler(**kwargs: Any) -> tuple[SyncReconciler, LogFeed, Recorder, MemoryStore]:
    store = MemoryStore()
    feed = LogFeed(store)
    send = Recorder()
    reconciler = SyncReconciler(feed, send, store, **kwargs)
    await reconciler.load()
    return reconciler, feed, send, store


# ============================================================
#  Outbound
# ============================================================


@pytest.mark.asyncio
async def test_first_sync_sends_everything() -> None:
    """A peer with no cursor gets the full set."""
    reconciler, feed, send, _ = await make_reconciler()
    await feed.add_local([make_log("a", "2024-01-01T00:00:00.000Z"), make_log("b", "2024-01-01T00:00:01.000Z")])

    count = await reconciler.on_peer_online("peer-1")

    assert count == 2
    message = send.sent[0]
    assert message["type"] == "sync_logs"
    assert message["targetPeerId"] == "peer-1"
    assert message["offset"] == 0
    assert message["since"] is None
    assert [log["id"] for log in message["logs"]] == ["a", "b"]
    assert reconciler.cursor_for("peer-1") is not None


@pytest.mark.asyncio
async def test_second_sync_sends_only_newer() -> None:
    """After a sync, only events newer than the cursor are sent."""
    reconciler, feed, send, _ = await make_reconciler()
    await feed.add_local([make_log("old", "2024-01-01T00:00:00.000Z")])
    await reconciler.on_peer_online("peer-1")
    cursor = reconciler.cursor_for("peer-1")

    await feed.add_local([make_log("new", "2999-01-01T00:00:00.000Z")])
    await reconciler.on_peer_online("peer-1")

    assert send.sent[1]["since"] == cursor
    assert [log["id"] for log in send.sent[1]["logs"]] == ["new"]


@pytest.mark.asyncio
async def test_cursors_are_per_peer() -> None:
    """Syncing one peer leaves another's cursor untouched."""
    reconciler, _, _, _ = await make_reconciler()
    await reconciler.on_peer_online("peer-1")
    assert reconciler.cursor_for("peer-2") is None


# ============================================================
#  Inbound
# ============================================================


@pytest.mark.asyncio
async def test_sync_payload_merges_and_tags_sender() -> None:
    """Received pages merge through the feed and are attributed."""
    reconciler, feed, send, _ = await make_reconciler()
    message = SyncLogsMessage.model_validate(
        {
            "type": "sync_logs",
            "senderId": "peer-1",
            "logs": [
                {"id": "x", "emoji": "👋", "line": "quit", "timestamp": "2024-01-01T00:00:00.000Z"},
            ],
        }
    )

    added = await reconciler.handle_sync_payload(message)

    assert added == 1
    assert feed.logs[0].user_id == "peer-1"
    assert reconciler.cursor_for("peer-1") is not None
    assert send.sent == []


@pytest.mark.asyncio
async def test_has_more_requests_next_page() -> None:
    """A page marked ``hasMore`` asks for the following page."""
    reconciler, _, send, _ = await make_reconciler(page_size=50)
    message = SyncLogsMessage.model_validate(
        {"type": "sync_logs", "senderId": "peer-1", "logs": [], "hasMore": True, "offset": 50, "limit": 50}
    )

    await reconciler.handle_sync_payload(message)

    assert send.sent == [
        {"type": "sync_logs", "targetPeerId": "peer-1", "logs": [], "limit": 50, "offset": 100}
    ]


# ============================================================
#  Cursor persistence
# ============================================================


@pytest.mark.asyncio
async def test_cursor_writes_are_debounced() -> None:
    """Cursors reach the store after the debounce delay."""
    reconciler, _, _, store = await make_reconciler(persist_delay=0.02)
    await reconciler.on_peer_online("peer-1")
    assert CURSORS_KEY not in store.data

    await asyncio.sleep(0.1)
    assert "peer-1" in store.data[CURSORS_KEY]


@pytest.mark.asyncio
async def test_close_forces_pending_write() -> None:
    """Closing writes cursors immediately."""
    reconciler, _, _, store = await make_reconciler(persist_delay=60)
    await reconciler.on_peer_online("peer-1")
    await reconciler.close()
    assert "peer-1" in store.data[CURSORS_KEY]


@pytest.mark.asyncio
async def test_cursors_reload() -> None:
    """Stored cursors are restored on load."""
    store = MemoryStore({CURSORS_KEY: {"peer-1": "2024-01-01T00:00:00.000Z"}})
    reconciler = SyncReconciler(LogFeed(store), Recorder(), store)
    await reconciler.load()
    assert reconciler.cursor_for("peer-1") == "2024-01-01T00:00:00.000Z"
