"""
Schemas for inbound WebSocket messages.

Every message from the server is validated here before it can reach the log
feed. Oversized or malformed messages are rejected whole; nothing is
partially applied.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from picologs_runtime.compression import decompress_logs
from picologs_runtime.types import (
    MAX_USER_ID_LENGTH,
    USER_ID_PATTERN,
    Log,
    TransmissionLog,
)

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 1000
MAX_USERNAME_LENGTH = 200
MAX_BATCH_LOGS = 1000
MAX_COMPRESSED_LENGTH = 2 * 1024 * 1024


class SingleLogMessage(BaseModel):
    type: Literal["log"]
    log: TransmissionLog


class GroupLogMessage(BaseModel):
    type: Literal["group_log"]
    log: TransmissionLog
    group_id: str = Field(alias="groupId", max_length=MAX_USER_ID_LENGTH)
    sender_id: str = Field(alias="senderId", max_length=MAX_USER_ID_LENGTH, pattern=USER_ID_PATTERN)
    sender_display_name: str = Field("", alias="senderDisplayName", max_length=MAX_USERNAME_LENGTH)

    model_config = {"populate_by_name": True}


class BatchLogsMessage(BaseModel):
    type: Literal["batch_logs"]
    logs: list[TransmissionLog] | None = Field(None, max_length=MAX_BATCH_LOGS)
    compressed: bool = False
    compressed_data: str | None = Field(None, alias="compressedData", max_length=MAX_COMPRESSED_LENGTH)
    sender_id: str | None = Field(
        None, alias="senderId", max_length=MAX_USER_ID_LENGTH, pattern=USER_ID_PATTERN
    )

    model_config = {"populate_by_name": True}


class BatchGroupLogsMessage(BatchLogsMessage):
    type: Literal["batch_group_logs"]  # type: ignore[assignment]
    group_id: str = Field(alias="groupId", max_length=MAX_USER_ID_LENGTH)
    sender_display_name: str = Field("", alias="senderDisplayName", max_length=MAX_USERNAME_LENGTH)


class SyncLogsMessage(BaseModel):
    type: Literal["sync_logs"]
    logs: list[TransmissionLog] = Field(max_length=MAX_BATCH_LOGS)
    sender_id: str = Field(alias="senderId", max_length=MAX_USER_ID_LENGTH, pattern=USER_ID_PATTERN)
    has_more: bool = Field(False, alias="hasMore")
    total: int | None = Field(None, ge=0)
    offset: int = Field(0, ge=0)
    limit: int | None = Field(None, gt=0)

    model_config = {"populate_by_name": True}


class PresenceMessage(BaseModel):
    type: Literal["peer_online", "peer_offline", "user_online", "user_offline"]
    user_id: str = Field(alias="userId", max_length=MAX_USER_ID_LENGTH, pattern=USER_ID_PATTERN)

    model_config = {"populate_by_name": True}

    @property
    def online(self) -> bool:
        return self.type.endswith("_online")


class RegisteredMessage(BaseModel):
    type: Literal["registered"]


class ErrorMessage(BaseModel):
    type: Literal["error"]
    message: str = Field(max_length=MAX_STRING_LENGTH)


class RefetchMessage(BaseModel):
    type: Literal["refetch_friends", "refetch_friend_requests", "refetch_groups", "refetch_group_invitations"]


class RefetchGroupDetailsMessage(BaseModel):
    type: Literal["refetch_group_details"]
    group_id: str = Field(alias="groupId", max_length=MAX_USER_ID_LENGTH)

    model_config = {"populate_by_name": True}


class PingMessage(BaseModel):
    type: Literal["ping", "pong"]


INBOUND_SCHEMAS: dict[str, type[BaseModel]] = {
    "log": SingleLogMessage,
    "group_log": GroupLogMessage,
    "batch_logs": BatchLogsMessage,
    "batch_group_logs": BatchGroupLogsMessage,
    "sync_logs": SyncLogsMessage,
    "peer_online": PresenceMessage,
    "peer_offline": PresenceMessage,
    "user_online": PresenceMessage,
    "user_offline": PresenceMessage,
    "registered": RegisteredMessage,
    "error": ErrorMessage,
    "refetch_friends": RefetchMessage,
    "refetch_friend_requests": RefetchMessage,
    "refetch_groups": RefetchMessage,
    "refetch_group_invitations": RefetchMessage,
    "refetch_group_details": RefetchGroupDetailsMessage,
    "ping": PingMessage,
    "pong": PingMessage,
}


def validate_message(message: Any) -> BaseModel | None:
    """Validate an inbound message against the schema for its type.

    Returns:
        The parsed model, or ``None`` for unknown types and invalid payloads.
    """
    if not isinstance(message, dict):
        logger.warning("[Security] Dropping non-object message")
        return None

    schema = INBOUND_SCHEMAS.get(message.get("type"))  # type: ignore[arg-type]
    if schema is None:
        logger.debug("Ignoring message of unknown type %r", message.get("type"))
        return None

    try:
        return schema.model_validate(message)
    except ValidationError as exc:
        logger.warning(
            "[Security] Message validation failed for %s: %d error(s)",
            message.get("type"),
            exc.error_count(),
        )
        return None


def batch_to_logs(message: BatchLogsMessage) -> list[Log]:
    """Decode a plain or compressed batch into local logs.

    Raises:
        CompressionError: If the compressed payload cannot be decoded.
        ValidationError: If any decompressed log fails validation.
        ValueError: If the decompressed batch is oversized.
    """
    if message.compressed:
        if not message.compressed_data:
            return []
        raw_logs = decompress_logs(message.compressed_data)
        if len(raw_logs) > MAX_BATCH_LOGS:
            raise ValueError(f"Compressed batch holds more than {MAX_BATCH_LOGS} logs")
        return [TransmissionLog.model_validate(raw).to_log() for raw in raw_logs]

    return [log.to_log() for log in message.logs or []]
