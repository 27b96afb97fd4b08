"""
Regex helpers with a wall-clock budget.

Game log lines are untrusted input. Each match is timed and any pattern that
runs past its budget is reported and treated as a miss, so a pathological
line can never stall the ingestion pipeline.
"""

from __future__ import annotations

import logging
import re
import time

__all__ = ["safe_search", "DEFAULT_TIMEOUT_MS", "MAX_SCAN_LENGTH"]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 100

# Lines longer than this are only scanned up to the limit
MAX_SCAN_LENGTH = 10_000


def safe_search(
    pattern: re.Pattern[str],
    text: str,
    timeout_ms: float = DEFAULT_TIMEOUT_MS,
) -> re.Match[str] | None:
    """Search ``text`` for ``pattern``, returning ``None`` on budget overrun.

    Args:
        pattern: Compiled regular expression.
        text: Text to scan (truncated to ``MAX_SCAN_LENGTH``).
        timeout_ms: Budget in milliseconds (default 100ms).

    Returns:
        The match, or ``None`` if there is none or the budget was exceeded.
    """
    start = time.perf_counter()
    match = pattern.search(text[:MAX_SCAN_LENGTH])
    elapsed_ms = (time.perf_counter() - start) * 1000

    if elapsed_ms > timeout_ms:
        logger.warning(
            "[Security] Regex timeout exceeded (%.1fms > %sms) for pattern %r",
            elapsed_ms,
            timeout_ms,
            pattern.pattern[:80],
        )
        return None

    return match
