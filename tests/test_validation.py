"""
Unit tests for inbound message validation.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from picologs_runtime.compression import compress_logs
from picologs_runtime.errors import CompressionError
from picologs_runtime.types import Log, TransmissionLog
from picologs_runtime.validation import (
    BatchGroupLogsMessage,
    BatchLogsMessage,
    PresenceMessage,
    SyncLogsMessage,
    batch_to_logs,
    validate_message,
)


def wire_log(**overrides: object) -> dict:
    log = {
        "id": "abc123",
        "userId": "peer-1",
        "player": "Pilot",
        "emoji": "😵",
        "line": "Pilot killed by Enemy",
        "timestamp": "2024-06-07T12:34:56.789Z",
        "eventType": "actor_death",
        "metadata": {"killerId": "67890", "victimId": "12345"},
    }
    log.update(overrides)
    return log


# ============================================================
#  Log bounds
# ============================================================


def test_transmission_log_accepts_wire_shape() -> None:
    """A normal peer event parses with camelCase keys."""
    log = TransmissionLog.model_validate(wire_log())
    assert log.user_id == "peer-1"
    assert log.event_type == "actor_death"


@pytest.mark.parametrize(
    "overrides",
    [
        {"id": "x" * 101},
        {"id": ""},
        {"player": "p" * 201},
        {"emoji": "e" * 11},
        {"line": "l" * 1001},
        {"eventType": "t" * 51},
        {"userId": "bad id with spaces"},
        {"timestamp": "yesterday"},
        {"metadata": {f"k{i}": i for i in range(33)}},
    ],
)
def test_transmission_log_bounds(overrides: dict) -> None:
    """Oversized or malformed fields are rejected."""
    with pytest.raises(ValidationError):
        TransmissionLog.model_validate(wire_log(**overrides))


def test_to_log_restores_local_fields() -> None:
    """Received events get an empty original and a closed UI state."""
    log = TransmissionLog.model_validate(wire_log(children=[wire_log(id="child")])).to_log()
    assert isinstance(log, Log)
    assert log.original == ""
    assert log.open is False
    assert log.children is not None and log.children[0].original == ""


def test_transmission_roundtrip_preserves_fields() -> None:
    """to_transmission then to_log keeps every transmitted field."""
    local = Log(
        id="a",
        user_id="u",
        player="P",
        emoji="🚀",
        line="P boarded Ship",
        timestamp="2024-06-07T12:34:56.789Z",
        original="raw",
        open=True,
        event_type="vehicle_control_flow",
        metadata={"vehicleId": "1"},
    )
    back = local.to_transmission().to_log()
    assert back == local.model_copy(update={"original": "", "open": False})


# ============================================================
#  Messages
# ============================================================


def test_validate_batch_logs() -> None:
    """A plain batch validates and yields its logs."""
    parsed = validate_message({"type": "batch_logs", "logs": [wire_log()], "senderId": "peer-1"})
    assert isinstance(parsed, BatchLogsMessage)
    assert [log.id for log in batch_to_logs(parsed)] == ["abc123"]


def test_validate_group_batch() -> None:
    """Group batches carry their group id."""
    parsed = validate_message(
        {"type": "batch_group_logs", "groupId": "g1", "logs": [wire_log()], "senderId": "peer-1"}
    )
    assert isinstance(parsed, BatchGroupLogsMessage)
    assert parsed.group_id == "g1"


def test_compressed_batch_decodes() -> None:
    """Compressed batches are decompressed and validated."""
    data = compress_logs([wire_log(id=str(i)) for i in range(12)])
    parsed = validate_message({"type": "batch_logs", "compressed": True, "compressedData": data})
    assert isinstance(parsed, BatchLogsMessage)
    assert len(batch_to_logs(parsed)) == 12


def test_compressed_batch_with_invalid_log_is_rejected() -> None:
    """One bad log inside a compressed batch rejects the whole batch."""
    data = compress_logs([wire_log(), wire_log(id="x" * 500)])
    parsed = validate_message({"type": "batch_logs", "compressed": True, "compressedData": data})
    assert isinstance(parsed, BatchLogsMessage)
    with pytest.raises(ValidationError):
        batch_to_logs(parsed)


def test_corrupt_compressed_batch_is_rejected() -> None:
    """Undecodable payloads raise CompressionError."""
    parsed = validate_message({"type": "batch_logs", "compressed": True, "compressedData": "bm90IGd6aXA="})
    assert isinstance(parsed, BatchLogsMessage)
    with pytest.raises(CompressionError):
        batch_to_logs(parsed)


def test_invalid_batch_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    """A batch with a malformed log never gets past validation."""
    with caplog.at_level("WARNING"):
        parsed = validate_message({"type": "batch_logs", "logs": [wire_log(emoji="x" * 50)]})
    assert parsed is None
    assert "[Security]" in caplog.text


def test_sync_logs_message() -> None:
    """Sync pages carry paging fields."""
    parsed = validate_message(
        {
            "type": "sync_logs",
            "senderId": "peer-1",
            "logs": [wire_log()],
            "hasMore": True,
            "offset": 100,
            "limit": 100,
            "total": 250,
        }
    )
    assert isinstance(parsed, SyncLogsMessage)
    assert parsed.has_more is True
    assert parsed.offset == 100


@pytest.mark.parametrize(
    "message_type, online",
    [("peer_online", True), ("peer_offline", False), ("user_online", True), ("user_offline", False)],
)
def test_presence_messages(message_type: str, online: bool) -> None:
    """Both presence vocabularies are accepted."""
    parsed = validate_message({"type": message_type, "userId": "peer-1"})
    assert isinstance(parsed, PresenceMessage)
    assert parsed.online is online


@pytest.mark.parametrize("message", [None, [], "text", {"type": "something_new"}, {}])
def test_unknown_or_malformed_messages(message: object) -> None:
    """Non-objects and unknown types are ignored."""
    assert validate_message(message) is None
