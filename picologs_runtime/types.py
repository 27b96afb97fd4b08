"""
Pydantic models for the Picologs runtime.

Mirrors the TypeScript types of the Picologs desktop client with Pythonic
naming conventions (snake_case attributes, camelCase on the wire).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


# Inbound bounds, shared with the validation layer
MAX_ID_LENGTH = 100
MAX_USER_ID_LENGTH = 100
MAX_PLAYER_NAME_LENGTH = 200
MAX_EMOJI_LENGTH = 10
MAX_LINE_LENGTH = 1000
MAX_ORIGINAL_LENGTH = 2000
MAX_EVENT_TYPE_LENGTH = 50
MAX_METADATA_KEYS = 32
MAX_CHILDREN = 100

USER_ID_PATTERN = r"^[\w\-.:]*$"


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_iso(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def utc_now_iso() -> str:
    return format_iso(datetime.now(timezone.utc))


# ============================================================
#  Configuration
# ============================================================


class ReconnectConfig(BaseModel):
    """WebSocket reconnection settings."""

    max_retries: int = 10
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000


class BatchConfig(BaseModel):
    """Outbound batching settings."""

    size_threshold: int = 8
    idle_flush_ms: int = 2500
    compress_count_threshold: int = 10
    compress_bytes_threshold: int = 5 * 1024


class TailConfig(BaseModel):
    """Log file tailing settings."""

    poll_interval_ms: int = 5000
    use_notifications: bool = True


class SpreeConfig(BaseModel):
    """Killing spree clustering settings."""

    window_ms: int = 120_000
    excluded_damage_types: list[str] = Field(default_factory=lambda: ["VehicleDestruction"])


class SyncConfig(BaseModel):
    """Peer sync settings."""

    page_size: int = 100
    cursor_flush_ms: int = 1000


class RuntimeConfig(BaseModel):
    """Configuration for running the Picologs runtime."""

    ws_url: str
    api_url: str = "https://picologs.com"
    user_id: str
    token: str | None = None
    log_path: str | None = None
    store_dir: str = "."
    max_logs: int = 1000
    regex_timeout_ms: int = 100
    request_timeout_ms: int = 30000
    send_timeout_ms: int = 5000
    connect_timeout_ms: int = 10000
    heartbeat_interval_ms: int = 30000
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    tail: TailConfig = Field(default_factory=TailConfig)
    spree: SpreeConfig = Field(default_factory=SpreeConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)


# ============================================================
#  Logs
# ============================================================


class EventType(str, Enum):
    """Tags for classified log events."""

    CONNECTION = "connection"
    LOCATION_CHANGE = "location_change"
    ACTOR_DEATH = "actor_death"
    DESTRUCTION = "destruction"
    SYSTEM_QUIT = "system_quit"
    VEHICLE_CONTROL_FLOW = "vehicle_control_flow"
    KILLING_SPREE = "killing_spree"


def _check_timestamp(value: str) -> str:
    try:
        parse_iso(value)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp: {value!r}") from exc
    return value


class Log(BaseModel):
    """A classified log event, as held locally.

    ``original`` (the verbatim game log line) and ``open`` (UI expansion
    state) never leave this process; see :class:`TransmissionLog`.
    """

    id: str
    user_id: str = Field("", alias="userId")
    player: str | None = None
    emoji: str
    line: str
    timestamp: str
    original: str = ""
    open: bool = False
    event_type: str | None = Field(None, alias="eventType")
    metadata: dict[str, Any] | None = None
    children: list[Log] | None = None

    model_config = {"populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def check_timestamp(cls, value: str) -> str:
        return _check_timestamp(value)

    @property
    def is_spree(self) -> bool:
        return self.event_type == EventType.KILLING_SPREE.value

    def to_transmission(self) -> TransmissionLog:
        """Strip local-only fields, recursively for children."""
        return TransmissionLog(
            id=self.id,
            user_id=self.user_id,
            player=self.player,
            emoji=self.emoji,
            line=self.line,
            timestamp=self.timestamp,
            event_type=self.event_type,
            metadata=self.metadata,
            children=(
                [child.to_transmission() for child in self.children]
                if self.children is not None
                else None
            ),
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialise the transmission form as a camelCase dict."""
        return self.to_transmission().to_wire()


class TransmissionLog(BaseModel):
    """Bandwidth-reduced log representation sent to peers."""

    id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    user_id: str = Field(
        "", alias="userId", max_length=MAX_USER_ID_LENGTH, pattern=USER_ID_PATTERN
    )
    player: str | None = Field(None, max_length=MAX_PLAYER_NAME_LENGTH)
    emoji: str = Field(max_length=MAX_EMOJI_LENGTH)
    line: str = Field(max_length=MAX_LINE_LENGTH)
    timestamp: str
    event_type: str | None = Field(None, alias="eventType", max_length=MAX_EVENT_TYPE_LENGTH)
    metadata: dict[str, Any] | None = None
    children: list[TransmissionLog] | None = Field(None, max_length=MAX_CHILDREN)

    model_config = {"populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def check_timestamp(cls, value: str) -> str:
        return _check_timestamp(value)

    @field_validator("metadata")
    @classmethod
    def check_metadata_size(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        if value is not None and len(value) > MAX_METADATA_KEYS:
            raise ValueError(f"metadata has more than {MAX_METADATA_KEYS} keys")
        return value

    def to_log(self) -> Log:
        """Rebuild a full local log with empty ``original`` and closed ``open``."""
        return Log(
            id=self.id,
            user_id=self.user_id,
            player=self.player,
            emoji=self.emoji,
            line=self.line,
            timestamp=self.timestamp,
            original="",
            open=False,
            event_type=self.event_type,
            metadata=self.metadata,
            children=(
                [child.to_log() for child in self.children]
                if self.children is not None
                else None
            ),
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================================
#  Roster
# ============================================================


class Friend(BaseModel):
    """A confirmed or pending friendship."""

    id: str
    status: str = "confirmed"
    friend_user_id: str = Field(alias="friendUserId")
    friend_discord_id: str | None = Field(None, alias="friendDiscordId")
    friend_username: str | None = Field(None, alias="friendUsername")
    friend_avatar: str | None = Field(None, alias="friendAvatar")
    friend_player: str | None = Field(None, alias="friendPlayer")
    friend_time_zone: str | None = Field(None, alias="friendTimeZone")
    is_online: bool | None = Field(None, alias="isOnline")
    is_connected: bool | None = Field(None, alias="isConnected")

    model_config = {"populate_by_name": True}


class Group(BaseModel):
    """A group the user belongs to."""

    id: str
    name: str
    description: str | None = None
    avatar: str | None = None
    tags: list[str] = Field(default_factory=list)
    member_count: int = Field(0, alias="memberCount")
    member_role: str | None = Field(None, alias="memberRole")
    created_at: str | None = Field(None, alias="createdAt")

    model_config = {"populate_by_name": True}


class GroupMember(BaseModel):
    """A member of a group."""

    user_id: str = Field(alias="userId")
    discord_id: str | None = Field(None, alias="discordId")
    username: str | None = None
    player: str | None = None
    role: str | None = None
    is_online: bool | None = Field(None, alias="isOnline")
    is_connected: bool | None = Field(None, alias="isConnected")

    model_config = {"populate_by_name": True}


class UserProfile(BaseModel):
    """The authenticated user's profile."""

    id: str
    discord_id: str | None = Field(None, alias="discordId")
    username: str | None = None
    avatar: str | None = None
    player: str | None = None
    time_zone: str | None = Field(None, alias="timeZone")
    use_player_as_display_name: bool = Field(False, alias="usePlayerAsDisplayName")
    friend_code: str | None = Field(None, alias="friendCode")

    model_config = {"populate_by_name": True}
