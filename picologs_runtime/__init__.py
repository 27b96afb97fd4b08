"""
Picologs runtime for Python.

Tails a Star Citizen ``Game.log``, classifies gameplay events, keeps an
ordered and deduplicated event set, and shares it with friends and groups
over the Picologs WebSocket server.

Example::

    from picologs_runtime import PicologsRuntime, RuntimeConfig

    runtime = PicologsRuntime(
        RuntimeConfig(
            ws_url="wss://ws.picologs.com",
            user_id="user-123",
            token="...",
            log_path="/path/to/StarCitizen/LIVE/Game.log",
        )
    )

    async def on_logs(event):
        for log in runtime.logs[-5:]:
            print(log.emoji, log.line)

    await runtime.listen(on_logs=on_logs)
"""

from picologs_runtime.client import PicologsRuntime
from picologs_runtime.errors import (
    AuthenticationExpiredError,
    CompressionError,
    ConnectionClosedError,
    PicologsError,
    RemoteError,
    RequestTimeoutError,
    TransportError,
)
from picologs_runtime.parser import LogParser, ParserContext, generate_id, parse_log_timestamp
from picologs_runtime.aggregator import flatten_sprees, group_killing_sprees
from picologs_runtime.sequencer import apply_retention, dedupe_and_sort
from picologs_runtime.store import JsonFileStore, KeyValueStore, MemoryStore
from picologs_runtime.transport import ConnectionStatus, Transport
from picologs_runtime.types import (
    RuntimeConfig,
    ReconnectConfig,
    BatchConfig,
    TailConfig,
    SpreeConfig,
    SyncConfig,
    EventType,
    Log,
    TransmissionLog,
    Friend,
    Group,
    GroupMember,
    UserProfile,
)

__all__ = [
    "PicologsRuntime",
    "RuntimeConfig",
    "ReconnectConfig",
    "BatchConfig",
    "TailConfig",
    "SpreeConfig",
    "SyncConfig",
    "EventType",
    "Log",
    "TransmissionLog",
    "Friend",
    "Group",
    "GroupMember",
    "UserProfile",
    "LogParser",
    "ParserContext",
    "generate_id",
    "parse_log_timestamp",
    "dedupe_and_sort",
    "apply_retention",
    "group_killing_sprees",
    "flatten_sprees",
    "KeyValueStore",
    "JsonFileStore",
    "MemoryStore",
    "Transport",
    "ConnectionStatus",
    "PicologsError",
    "TransportError",
    "RequestTimeoutError",
    "ConnectionClosedError",
    "AuthenticationExpiredError",
    "RemoteError",
    "CompressionError",
]

__version__ = "0.1.0"
