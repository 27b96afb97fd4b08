"""
Picologs runtime: the coordinator that ties tailing, classification, the
event set, outbound batching, peer sync and the server session together.

Usage::

    from picologs_runtime import PicologsRuntime, RuntimeConfig

    runtime = PicologsRuntime(
        RuntimeConfig(
            ws_url="wss://ws.picologs.com",
            user_id="user-123",
            token="...",
            log_path="C:/Games/StarCitizen/LIVE/Game.log",
        )
    )
    await runtime.start()
    # ... runtime.logs holds the aggregated event list
    await runtime.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Coroutine, Iterable

import httpx
from pydantic import BaseModel, ValidationError

from picologs_runtime.api import ApiClient
from picologs_runtime.batcher import OutboundBatcher
from picologs_runtime.errors import CompressionError, TransportError
from picologs_runtime.events import (
    AUTH_EXPIRED,
    BATCH_REJECTED,
    CONNECTION_STATUS,
    LOGS_UPDATED,
    ROSTER_UPDATED,
    EventHandler,
    EventManager,
)
from picologs_runtime.feed import LogFeed
from picologs_runtime.parser import LogParser
from picologs_runtime.presence import Roster
from picologs_runtime.store import JsonFileStore, KeyValueStore
from picologs_runtime.sync import SyncReconciler
from picologs_runtime.tailer import LogTailer, TailResult
from picologs_runtime.transport import ConnectFn, ConnectionStatus, Transport
from picologs_runtime.types import Log, RuntimeConfig, UserProfile
from picologs_runtime.validation import (
    BatchLogsMessage,
    ErrorMessage,
    GroupLogMessage,
    PresenceMessage,
    RefetchGroupDetailsMessage,
    RefetchMessage,
    SingleLogMessage,
    SyncLogsMessage,
    batch_to_logs,
    validate_message,
)

logger = logging.getLogger(__name__)

STORE_ID = "picologs"


class PicologsRuntime:
    """
    The Picologs client runtime.

    Owns one instance of every component. Local lines flow from the tailer
    through the parser into the feed and out through the batcher; inbound
    messages are validated and merged into the same feed.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        store: KeyValueStore | None = None,
        connect: ConnectFn | None = None,
    ) -> None:
        self._config = config
        self._store = store or JsonFileStore(config.store_dir, STORE_ID)
        self._events = EventManager()

        self.api = ApiClient(config.api_url, config.token, timeout=config.request_timeout_ms / 1000)
        self.transport = Transport(
            config.ws_url,
            user_id=config.user_id,
            token=config.token,
            request_timeout=config.request_timeout_ms / 1000,
            send_timeout=config.send_timeout_ms / 1000,
            connect_timeout=config.connect_timeout_ms / 1000,
            heartbeat_interval=config.heartbeat_interval_ms / 1000,
            reconnect=config.reconnect,
            connect=connect,
            on_message=self._on_message,
            on_status=self._on_status,
        )
        self.feed = LogFeed(self._store, max_logs=config.max_logs, spree_config=config.spree)
        self.parser = LogParser(
            config.user_id,
            regex_timeout_ms=config.regex_timeout_ms,
            on_profile_changed=self._on_profile_changed,
        )
        self.roster = Roster()
        self.batcher = OutboundBatcher(self.transport.send, lambda: self.roster.group_ids, config.batch)
        self.sync = SyncReconciler(
            self.feed,
            self.transport.send,
            self._store,
            page_size=config.sync.page_size,
            persist_delay=config.sync.cursor_flush_ms / 1000,
        )
        self.tailer: LogTailer | None = None
        self.profile: UserProfile | None = None

        self._tasks: set[asyncio.Task[Any]] = set()
        self._running = False

    @property
    def logs(self) -> list[Log]:
        """The aggregated event list, oldest first."""
        return self.feed.snapshot()

    @property
    def status(self) -> ConnectionStatus:
        return self.transport.status

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start the runtime.

        Restores the stored event set and sync cursors, opens the server
        session, fetches the profile and roster when a token is configured,
        and starts tailing ``log_path`` if one is set. A failed connection is
        logged and the runtime keeps working offline.
        """
        await self.feed.load()
        self.parser.context.only_process_after = self.feed.only_process_after
        await self.sync.load()

        try:
            await self.transport.connect()
        except TransportError as exc:
            logger.warning("Starting offline: %s", exc)

        if self._config.token:
            await self.refresh_profile()
            await self.refresh_roster()

        if self._config.log_path:
            await self.watch_log(self._config.log_path)

        self._running = True
        logger.info("Picologs runtime started for %s", self._config.user_id)

    async def stop(self) -> None:
        """Stop tailing, flush pending work and close every connection."""
        self._running = False
        if self.tailer is not None:
            await self.tailer.stop()

        await self.batcher.close()
        await self.sync.close()

        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.transport.close()
        await self.api.close()
        logger.info("Picologs runtime stopped")

    async def watch_log(self, path: str | os.PathLike[str]) -> None:
        """Start tailing a Game.log file, replacing any previous tailer."""
        if self.tailer is not None:
            await self.tailer.stop()
        self.tailer = LogTailer(
            path,
            poll_interval=self._config.tail.poll_interval_ms / 1000,
            use_notifications=self._config.tail.use_notifications,
        )
        await self.tailer.start(self._on_tail_update)

    async def ingest_lines(self, lines: Iterable[str]) -> list[Log]:
        """Classify raw lines, add the new events and queue them for peers.

        Returns:
            The events that were new to the set.
        """
        fresh = await self.feed.add_local(self.parser.parse_lines(lines))
        if fresh:
            await self.batcher.add(fresh)
            await self._events.emit(LOGS_UPDATED, {"count": len(fresh), "source": "local"})
        return fresh

    async def send_log(self, log: Log) -> None:
        """Send one event to friends right away, bypassing the batcher.

        Raises:
            TransportError: If the session is down or the send times out.
        """
        await self.transport.send({"type": "log", "log": log.to_wire()})

    async def clear_logs(self) -> str:
        """Empty the event set and ignore every line stamped before now."""
        cutoff = await self.feed.clear()
        self.parser.context.only_process_after = cutoff
        if self.tailer is not None:
            await self.tailer.reset()
        await self._events.emit(LOGS_UPDATED, {"count": 0, "source": "clear"})
        return cutoff

    async def refresh_profile(self) -> UserProfile | None:
        try:
            self.profile = await self.api.fetch_user_profile()
        except (httpx.HTTPError, ValidationError) as exc:
            logger.warning("Could not fetch profile: %s", exc)
            return None
        if self.parser.context.player_name is None and self.profile.player:
            self.parser.context.player_name = self.profile.player
        return self.profile

    async def refresh_roster(self) -> bool:
        """Fetch friends, groups and group members from the API.

        Returns:
            Whether anything visible changed.
        """
        try:
            friends = await self.api.fetch_friends()
            groups = await self.api.fetch_groups()
            members = {group.id: await self.api.fetch_group_members(group.id) for group in groups}
        except (httpx.HTTPError, ValidationError) as exc:
            logger.warning("Roster refresh failed: %s", exc)
            return False

        changed = self.roster.replace_friends(friends)
        changed = self.roster.replace_groups(groups) or changed
        changed = self.roster.replace_group_members(members) or changed
        if changed:
            await self._events.emit(ROSTER_UPDATED, {"friends": len(friends), "groups": len(groups)})
        return changed

    # ---- Event shortcuts ----

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to an inbound message type or a local notification."""
        self._events.subscribe(event_type, handler)

    def off(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Unsubscribe from an event type."""
        self._events.unsubscribe(event_type, handler)

    async def listen(
        self,
        on_logs: EventHandler | None = None,
        on_status: EventHandler | None = None,
        on_any: EventHandler | None = None,
    ) -> None:
        """Start if needed, register handlers, and run until cancelled.

        Args:
            on_logs: Handler for ``logs.updated``.
            on_status: Handler for ``connection.status``.
            on_any: Wildcard handler for all events.
        """
        if on_logs:
            self._events.subscribe(LOGS_UPDATED, on_logs)
        if on_status:
            self._events.subscribe(CONNECTION_STATUS, on_status)
        if on_any:
            self._events.subscribe_all(on_any)
        if not self._running:
            await self.start()

        logger.info("Listening for events... (press Ctrl+C to stop)")
        try:
            while self._running:
                await asyncio.sleep(1)
        except (asyncio.CancelledError, KeyboardInterrupt):
            pass
        finally:
            await self.stop()

    # ---- Internal ----

    async def _on_tail_update(self, result: TailResult) -> None:
        if result.truncated:
            await self.feed.reset()
            await self._events.emit(LOGS_UPDATED, {"count": 0, "source": "reset"})
        if result.lines:
            await self.ingest_lines(result.lines)

    async def _on_message(self, message: dict[str, Any]) -> None:
        parsed = validate_message(message)
        if parsed is None:
            return
        await self._route(parsed)
        await self._events.dispatch(message)

    async def _route(self, parsed: BaseModel) -> None:
        added = 0
        if isinstance(parsed, GroupLogMessage):
            added = await self.feed.merge_remote([parsed.log.to_log()], sender_id=parsed.sender_id)
        elif isinstance(parsed, SingleLogMessage):
            added = await self.feed.merge_remote([parsed.log.to_log()])
        elif isinstance(parsed, BatchLogsMessage):
            try:
                logs = batch_to_logs(parsed)
            except (CompressionError, ValidationError, ValueError) as exc:
                logger.warning("Rejected %s from %s: %s", parsed.type, parsed.sender_id, exc)
                await self._events.emit(
                    BATCH_REJECTED,
                    {"messageType": parsed.type, "senderId": parsed.sender_id, "reason": str(exc)},
                )
                return
            added = await self.feed.merge_remote(logs, sender_id=parsed.sender_id)
        elif isinstance(parsed, SyncLogsMessage):
            added = await self.sync.handle_sync_payload(parsed)
        elif isinstance(parsed, PresenceMessage):
            if self.roster.set_online(parsed.user_id, parsed.online):
                await self._events.emit(ROSTER_UPDATED, {"userId": parsed.user_id, "online": parsed.online})
            if parsed.online:
                await self.sync.on_peer_online(parsed.user_id)
        elif isinstance(parsed, (RefetchMessage, RefetchGroupDetailsMessage)):
            self._spawn(self.refresh_roster())
        elif isinstance(parsed, ErrorMessage):
            logger.warning("Server error: %s", parsed.message)

        if added:
            await self._events.emit(LOGS_UPDATED, {"count": added, "source": "remote"})

    async def _on_status(self, status: ConnectionStatus) -> None:
        await self._events.emit(CONNECTION_STATUS, {"status": status.value})
        if status is ConnectionStatus.AUTH_EXPIRED:
            await self._events.emit(AUTH_EXPIRED)

    def _on_profile_changed(self, name: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; profile update for %s not sent", name)
            return
        self._spawn(self._send_profile(name))

    async def _send_profile(self, name: str) -> None:
        data: dict[str, Any] = {
            "player": name,
            "usePlayerAsDisplayName": self.profile.use_player_as_display_name if self.profile else False,
        }
        if self.profile is not None and self.profile.time_zone:
            data["timeZone"] = self.profile.time_zone
        try:
            await self.transport.send({"type": "update_user_profile", "data": data})
        except TransportError as exc:
            logger.warning("Could not send profile update: %s", exc)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())
