"""
Outbound batching of local events.

New local events are buffered per destination (friends, and each group the
user belongs to) and sent in bulk either when the buffer reaches the size
threshold or when the idle timer fires, whichever comes first. Both triggers
funnel into one single-flight ``flush``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from picologs_runtime.compression import compress_logs, should_compress_logs
from picologs_runtime.errors import TransportError
from picologs_runtime.types import BatchConfig, Log, TransmissionLog

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[None]]
GroupIdsFn = Callable[[], Iterable[str]]


class OutboundBatcher:
    """Buffers local events and flushes them to friends and groups."""

    def __init__(
        self,
        send: SendFn,
        group_ids: GroupIdsFn,
        config: BatchConfig | None = None,
    ) -> None:
        self._send = send
        self._group_ids = group_ids
        self._config = config or BatchConfig()
        self._friends: list[TransmissionLog] = []
        self._groups: dict[str, list[TransmissionLog]] = {}
        self._timer: asyncio.Task[None] | None = None
        self._flushing = False
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Number of events waiting for the friends destination."""
        return len(self._friends)

    @property
    def pending_groups(self) -> dict[str, int]:
        return {group_id: len(logs) for group_id, logs in self._groups.items() if logs}

    async def add(self, logs: Iterable[Log]) -> None:
        """Queue local events for every destination."""
        if self._closed:
            logger.debug("Batcher closed; dropping outbound events")
            return
        transmissions = [log.to_transmission() for log in logs]
        if not transmissions:
            return

        self._friends.extend(transmissions)
        for group_id in self._group_ids():
            self._groups.setdefault(group_id, []).extend(transmissions)

        if len(self._friends) >= self._config.size_threshold:
            await self.flush()
        else:
            self._arm_timer()

    async def flush(self) -> None:
        """Send everything buffered. Concurrent calls collapse into one."""
        if self._flushing:
            return
        self._flushing = True
        try:
            friends, self._friends = self._friends, []
            groups, self._groups = self._groups, {}
            self._cancel_timer()

            if friends:
                await self._send_batch("batch_logs", friends)
            for group_id, logs in groups.items():
                if logs:
                    await self._send_batch("batch_group_logs", logs, groupId=group_id)
        finally:
            self._flushing = False

        if (self._friends or any(self._groups.values())) and not self._closed:
            self._arm_timer()

    async def close(self) -> None:
        """Cancel the timer and flush what is left."""
        self._cancel_timer()
        await self.flush()
        self._closed = True

    def _arm_timer(self) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._idle_flush())

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _idle_flush(self) -> None:
        await asyncio.sleep(self._config.idle_flush_ms / 1000)
        await self.flush()

    async def _send_batch(self, message_type: str, logs: list[TransmissionLog], **extra: Any) -> None:
        wire = [log.to_wire() for log in logs]
        message: dict[str, Any] = {"type": message_type, **extra}

        if should_compress_logs(
            wire,
            count_threshold=self._config.compress_count_threshold,
            bytes_threshold=self._config.compress_bytes_threshold,
        ):
            message["compressed"] = True
            message["compressedData"] = compress_logs(wire)
            logger.debug("Compressed %d log(s) for %s", len(wire), message_type)
        else:
            message["logs"] = wire

        try:
            await self._send(message)
        except TransportError as exc:
            logger.warning("Dropped %s of %d log(s): %s", message_type, len(wire), exc)
