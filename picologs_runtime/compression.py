"""
Compression for outbound log batches.

Large batches travel as gzip-compressed JSON, base64-encoded so they fit in
a text frame. The thresholds must match the server's.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import zlib
from typing import Any

from picologs_runtime.errors import CompressionError

COMPRESSION_THRESHOLD_BYTES = 5 * 1024
COMPRESSION_THRESHOLD_LOGS = 10


def _dumps(logs: list[dict[str, Any]]) -> str:
    return json.dumps(logs, separators=(",", ":"), ensure_ascii=False)


def compress_logs(logs: list[dict[str, Any]]) -> str:
    """Serialise, gzip and base64-encode a list of wire logs."""
    return base64.b64encode(gzip.compress(_dumps(logs).encode("utf-8"))).decode("ascii")


def decompress_logs(compressed_data: str) -> list[dict[str, Any]]:
    """Exact inverse of :func:`compress_logs`.

    Raises:
        CompressionError: If the payload is not valid base64, gzip or a JSON list.
    """
    try:
        raw = gzip.decompress(base64.b64decode(compressed_data, validate=True))
        logs = json.loads(raw.decode("utf-8"))
    except (binascii.Error, zlib.error, OSError, EOFError, UnicodeDecodeError, ValueError) as exc:
        raise CompressionError(f"Could not decode compressed logs: {exc}") from exc

    if not isinstance(logs, list):
        raise CompressionError("Compressed payload is not a list of logs")
    return logs


def should_compress_logs(
    logs: list[dict[str, Any]],
    count_threshold: int = COMPRESSION_THRESHOLD_LOGS,
    bytes_threshold: int = COMPRESSION_THRESHOLD_BYTES,
) -> bool:
    """Compress when there are more than ``count_threshold`` logs or the JSON
    exceeds ``bytes_threshold``."""
    if len(logs) > count_threshold:
        return True
    return len(_dumps(logs).encode("utf-8")) > bytes_threshold
