"""
Incremental tailing of a growing log file.

The tailer remembers how many lines it has already handed out. Each check
re-reads the file and returns only the lines past that mark; a file that got
shorter was truncated or rotated, which resets the mark and is reported so
the owner can rebuild its state.

Change notifications (``watchfiles``) are not delivered reliably on every
platform, so a fixed-interval poll runs alongside them. Both paths go through
the same lock, held across read and dispatch.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from watchfiles import awatch

logger = logging.getLogger(__name__)


@dataclass
class TailResult:
    """Lines appended since the previous read."""

    lines: list[str] = field(default_factory=list)
    truncated: bool = False

    def __bool__(self) -> bool:
        return bool(self.lines) or self.truncated


TailHandler = Callable[[TailResult], Awaitable[None]]


class LogTailer:
    """Tails one file path."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        poll_interval: float = 5.0,
        use_notifications: bool = True,
    ) -> None:
        self.path = Path(path)
        self.last_read_line_count = 0
        self._poll_interval = poll_interval
        self._use_notifications = use_notifications
        self._lock = asyncio.Lock()
        self._handler: TailHandler | None = None
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def read_new_lines(self) -> TailResult:
        """Return the lines appended since the last read."""
        async with self._lock:
            return await self._read_unlocked()

    async def reset(self) -> None:
        """Forget the read position so the next read starts from line 0."""
        async with self._lock:
            self.last_read_line_count = 0

    async def check(self) -> TailResult:
        """Read new lines and hand them to the handler, under the lock."""
        async with self._lock:
            result = await self._read_unlocked()
            if result and self._handler is not None:
                try:
                    await self._handler(result)
                except Exception:
                    logger.exception("Error handling new lines from %s", self.path)
            return result

    async def _read_unlocked(self) -> TailResult:
        try:
            content = await asyncio.to_thread(self.path.read_text, encoding="utf-8", errors="replace")
        except FileNotFoundError:
            logger.debug("Log file %s does not exist yet", self.path)
            return TailResult()

        lines = content.splitlines()
        current = len(lines)
        truncated = False

        if current < self.last_read_line_count:
            logger.info(
                "Log file %s shrank from %d to %d lines; restarting from the top",
                self.path,
                self.last_read_line_count,
                current,
            )
            self.last_read_line_count = 0
            truncated = True

        if current <= self.last_read_line_count:
            return TailResult(truncated=truncated)

        new_lines = lines[self.last_read_line_count:current]
        self.last_read_line_count = current
        return TailResult(lines=new_lines, truncated=truncated)

    async def start(self, handler: TailHandler) -> None:
        """Start watching: one initial check, then notifications and polling."""
        if self.is_running:
            return
        self._handler = handler
        self._stop_event.clear()
        await self.check()
        self._tasks = [asyncio.create_task(self._poll_loop())]
        if self._use_notifications:
            self._tasks.append(asyncio.create_task(self._watch_loop()))
        logger.info("Tailing %s", self.path)

    async def stop(self) -> None:
        """Stop both watch loops."""
        self._stop_event.set()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._handler = None

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self._poll_interval)
            await self.check()

    async def _watch_loop(self) -> None:
        try:
            async for _changes in awatch(self.path, stop_event=self._stop_event):
                await self.check()
        except FileNotFoundError:
            logger.info("Cannot watch %s for changes; relying on polling", self.path)
        except OSError:
            logger.warning("File watcher for %s failed; relying on polling", self.path, exc_info=True)
