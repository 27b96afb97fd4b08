"""
Game.log line classifier.

Turns raw Star Citizen ``Game.log`` lines into :class:`Log` events. Rules
live in an explicit, ordered table (``CLASSIFIER_RULES``); the first rule
whose ``detect`` hits owns the line, and later rules are never consulted.
Most lines match nothing and are dropped silently.

Usage::

    parser = LogParser(user_id="user-1")
    for raw in new_lines:
        log = parser.parse_line(raw)
        if log is not None:
            ...
"""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from picologs_runtime.regex_utils import DEFAULT_TIMEOUT_MS, safe_search
from picologs_runtime.types import (
    MAX_LINE_LENGTH,
    MAX_ORIGINAL_LENGTH,
    EventType,
    Log,
    format_iso,
    parse_iso,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

ProfileChangedHandler = Callable[[str], None]


# ============================================================
#  Timestamps and ids
# ============================================================

_TIMESTAMP_PREFIX_RE = re.compile(r"^\s*<([^>]+)>")
_ISO_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_RAW_TIMESTAMP_RE = re.compile(
    r"(\d{4})\.(\d{2})\.(\d{2})-(\d{2}):(\d{2}):(\d{2})(?:[:.](\d{0,3}))?"
)


def parse_log_timestamp(raw: str) -> str:
    """Normalise a log timestamp token to ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    Accepts ISO-8601 (passed through at millisecond precision) or the raw
    ``2024.06.07-12:34:56:789`` form, where milliseconds are optional and
    right-padded with zeros. Anything else yields the current time.
    """
    raw = raw.strip()
    if _ISO_TIMESTAMP_RE.match(raw):
        try:
            return format_iso(parse_iso(raw))
        except ValueError:
            pass

    match = _RAW_TIMESTAMP_RE.search(raw)
    if match is None:
        return utc_now_iso()

    year, month, day, hour, minute, second, millis = match.groups()
    try:
        datetime(int(year), int(month), int(day), int(hour), int(minute), int(second))
    except ValueError:
        return utc_now_iso()

    millis = (millis or "").ljust(3, "0")
    return f"{year}-{month}-{day}T{hour}:{minute}:{second}.{millis}Z"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_id(timestamp: str, line: str) -> str:
    """Deterministic id for a log line.

    Combines a 32-bit rolling hash and a position-weighted sum over the
    UTF-16 code units of ``timestamp + "|" + line``. Matches the ids the
    desktop client produces, so re-parsed lines dedupe against peers' copies.
    """
    data = f"{timestamp}|{line}".encode("utf-16-le")
    units = struct.unpack(f"<{len(data) // 2}H", data)

    rolling = 0
    weighted = 0
    for index, unit in enumerate(units):
        rolling = _to_int32(_to_int32(rolling << 5) - rolling + unit)
        weighted += unit * (index + 1)

    return _to_base36(abs(rolling)) + _to_base36(abs(weighted))


# ============================================================
#  Display helpers
# ============================================================

SHIP_TYPES = [
    "325a",
    "c1",
    "a2",
    "warlock",
    "eclipse",
    "inferno",
    "85x",
    "mantis",
    "hornet",
    "fury",
    "gladius",
    "arrow",
    "carrack",
    "cutlass",
    "freelancer",
    "avenger",
    "nomad",
]


def get_ship_type(ship_name: str | None) -> str:
    """Short ship label, or the raw name when the hull is not recognised."""
    if not ship_name:
        return "Unknown Ship"
    lowered = ship_name.lower()
    for ship_type in SHIP_TYPES:
        if ship_type in lowered:
            return ship_type
    return ship_name


def get_name(name: str | None) -> str:
    """Display name for an actor, labelling NPCs and unknown entities."""
    if not name:
        return "Unknown"
    if "unknown" in name:
        return "🤷‍♂️ Unknown"
    return "🤖 NPC" if "PU_" in name else name


# ============================================================
#  Rules
# ============================================================


@dataclass
class ParserContext:
    """Running state shared by all rules."""

    player_name: str | None = None
    player_id: str | None = None
    # Lines stamped before this instant are ignored (set by clear-log)
    only_process_after: str | None = None


@dataclass(frozen=True)
class Classified:
    line: str
    emoji: str
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class ClassifierRule:
    """One entry of the classification table.

    ``detect`` returns a truthy hit (usually a match) when the rule owns the
    line. ``build`` turns the hit into a :class:`Classified`, or ``None`` when
    required fields are missing, which drops the line.
    """

    name: str
    event_type: EventType
    detect: Callable[[str, LogParser], Any]
    build: Callable[[Any, str, LogParser], Classified | None]


_CONNECTION_RE = re.compile(r"AccountLoginCharacterStatus_Character")
_CONNECTION_NAME_RE = re.compile(r"- name (.*?) ")
_ENTITY_ID_RE = re.compile(r"EntityId\[(\d+)\]")

_INVENTORY_RE = re.compile(r"<RequestLocationInventory>")
_INVENTORY_PLAYER_RE = re.compile(r"Player\[([^\]]+)\]")
_INVENTORY_LOCATION_RE = re.compile(r"Location\[([^\]]+)\]")

_ACTOR_DEATH_RE = re.compile(r"<Actor Death>")
_DEATH_DETAIL_RE = re.compile(
    r"'([^']+)' \[(\d+)\] in zone '([^']+)' killed by '([^']+)' \[(\d+)\] "
    r"using '([^']+)' \[Class ([^\]]+)\] with damage type '([^']+)'"
    r"(?: from direction x: ([\d.\-]+), y: ([\d.\-]+), z: ([\d.\-]+))?"
)

_VEHICLE_DESTRUCTION_RE = re.compile(r"<Vehicle Destruction>")
_VEHICLE_RE = re.compile(r"Vehicle '(.*?)' \[(.*?)\]")
_CAUSED_BY_RE = re.compile(r"caused by '(.*?)' \[(.*?)\]")
_DESTROY_LEVEL_RE = re.compile(r"destroyLevel from '(.*?)' to '(.*?)'")
_SOFT_DEATH_MARKER = "SoftDeath"

_SHIP_DESTRUCTION_RE = re.compile(r"<Ship Destruction>")
_SYSTEM_QUIT_RE = re.compile(r"<SystemQuit>")

_VEHICLE_CONTROL_RE = re.compile(r"<Vehicle Control Flow>")
_BOARDED_SHIP_RE = re.compile(r"'([A-Za-z0-9_]+)_\d+'")
_BRACKET_ID_RE = re.compile(r"\[(\d+)\]")


def _marker(pattern: re.Pattern[str]) -> Callable[[str, LogParser], Any]:
    def detect(line: str, parser: LogParser) -> Any:
        return parser.search(pattern, line)

    return detect


def _build_connection(hit: Any, line: str, parser: LogParser) -> Classified | None:
    name_match = parser.search(_CONNECTION_NAME_RE, line)
    if name_match is None or not name_match.group(1):
        return None
    name = name_match.group(1)

    ctx = parser.context
    entity_match = parser.search(_ENTITY_ID_RE, line)
    if entity_match is not None and ctx.player_id is None:
        ctx.player_id = entity_match.group(1)

    if name != ctx.player_name:
        ctx.player_name = name
        parser.notify_profile_changed(name)

    return Classified(
        line=f"{name} connected to the game",
        emoji="🛜",
        metadata={"entityId": ctx.player_id} if ctx.player_id else None,
    )


def _detect_inventory(line: str, parser: LogParser) -> Any:
    if parser.search(_INVENTORY_RE, line) is None:
        return None
    player_match = parser.search(_INVENTORY_PLAYER_RE, line)
    if player_match is None or player_match.group(1) != parser.context.player_name:
        return None
    return player_match


def _build_inventory(hit: Any, line: str, parser: LogParser) -> Classified | None:
    location_match = parser.search(_INVENTORY_LOCATION_RE, line)
    if location_match is None:
        return None
    location = location_match.group(1)
    return Classified(
        line=f"{hit.group(1)} requested inventory at {location}",
        emoji="🔍",
        metadata={"location": location},
    )


def _death_metadata(match: re.Match[str]) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "victimName": match.group(1),
        "victimId": match.group(2),
        "zone": match.group(3),
        "killerName": match.group(4),
        "killerId": match.group(5),
        "weaponInstance": match.group(6),
        "weaponClass": match.group(7),
        "damageType": match.group(8),
    }
    if match.group(9) is not None:
        metadata["direction"] = {"x": match.group(9), "y": match.group(10), "z": match.group(11)}
    return metadata


def _detect_self_death(line: str, parser: LogParser) -> Any:
    if parser.search(_ACTOR_DEATH_RE, line) is None:
        return None
    match = parser.search(_DEATH_DETAIL_RE, line)
    player = parser.context.player_name
    if match is None or player is None or match.group(1) != player:
        return None
    return match


def _build_self_death(hit: Any, line: str, parser: LogParser) -> Classified | None:
    metadata = _death_metadata(hit)
    victim = metadata["victimName"]
    damage_type = metadata["damageType"]

    if damage_type == "Suicide" or metadata["killerId"] == metadata["victimId"]:
        summary = f"{victim} committed suicide"
    elif damage_type == "SelfDestruct":
        summary = f"{victim} killed by self-destruct"
    elif damage_type == "VehicleDestruction":
        summary = f"{victim} died in a vehicle destruction"
    else:
        summary = f"{victim} killed by {get_name(metadata['killerName'])}"

    return Classified(line=summary, emoji="😵", metadata=metadata)


def _build_other_death(hit: Any, line: str, parser: LogParser) -> Classified | None:
    match = parser.search(_DEATH_DETAIL_RE, line)
    if match is None:
        return None
    metadata = _death_metadata(match)
    victim = get_name(metadata["victimName"])
    if metadata["killerId"] == metadata["victimId"]:
        summary = f"{victim} committed suicide"
    else:
        summary = f"{get_name(metadata['killerName'])} killed {victim}"
    return Classified(line=summary, emoji="🗡️", metadata=metadata)


def _build_vehicle_destruction(hit: Any, line: str, parser: LogParser) -> Classified | None:
    vehicle_match = parser.search(_VEHICLE_RE, line)
    level_match = parser.search(_DESTROY_LEVEL_RE, line)
    if vehicle_match is None or level_match is None:
        return None

    cause_match = parser.search(_CAUSED_BY_RE, line)
    destroyer = cause_match.group(1) if cause_match is not None else None
    soft = _SOFT_DEATH_MARKER in level_match.group(2)

    ship = get_ship_type(vehicle_match.group(1))
    verb = "disabled" if soft else "destroyed"
    return Classified(
        line=f"{ship} {verb} by {get_name(destroyer)}",
        emoji="🔥" if soft else "💥",
        metadata={
            "vehicleName": vehicle_match.group(1),
            "vehicleId": vehicle_match.group(2),
            "killerName": destroyer,
            "killerId": cause_match.group(2) if cause_match is not None else None,
            "destroyLevelFrom": level_match.group(1),
            "destroyLevelTo": level_match.group(2),
        },
    )


def _build_ship_destruction(hit: Any, line: str, parser: LogParser) -> Classified | None:
    return Classified(line="Ship destroyed", emoji="💥")


def _build_system_quit(hit: Any, line: str, parser: LogParser) -> Classified | None:
    player = parser.context.player_name or "Player"
    return Classified(line=f"{player} quit the game", emoji="👋")


def _build_boarding(hit: Any, line: str, parser: LogParser) -> Classified | None:
    ship_match = parser.search(_BOARDED_SHIP_RE, line)
    id_match = parser.search(_BRACKET_ID_RE, line)
    if ship_match is None or id_match is None:
        return None
    player = parser.context.player_name or "Player"
    return Classified(
        line=f"{player} boarded {ship_match.group(1)}",
        emoji="🚀",
        metadata={"vehicleName": ship_match.group(1), "vehicleId": id_match.group(1)},
    )


# Priority order matters: first hit wins.
CLASSIFIER_RULES: tuple[ClassifierRule, ...] = (
    ClassifierRule("connection", EventType.CONNECTION, _marker(_CONNECTION_RE), _build_connection),
    ClassifierRule("inventory_request", EventType.LOCATION_CHANGE, _detect_inventory, _build_inventory),
    ClassifierRule("self_death", EventType.ACTOR_DEATH, _detect_self_death, _build_self_death),
    ClassifierRule("other_death", EventType.ACTOR_DEATH, _marker(_ACTOR_DEATH_RE), _build_other_death),
    ClassifierRule(
        "vehicle_destruction",
        EventType.DESTRUCTION,
        _marker(_VEHICLE_DESTRUCTION_RE),
        _build_vehicle_destruction,
    ),
    ClassifierRule(
        "ship_destruction", EventType.DESTRUCTION, _marker(_SHIP_DESTRUCTION_RE), _build_ship_destruction
    ),
    ClassifierRule("system_quit", EventType.SYSTEM_QUIT, _marker(_SYSTEM_QUIT_RE), _build_system_quit),
    ClassifierRule(
        "vehicle_boarding", EventType.VEHICLE_CONTROL_FLOW, _marker(_VEHICLE_CONTROL_RE), _build_boarding
    ),
)


# ============================================================
#  Parser
# ============================================================


class LogParser:
    """Stateful classifier for one local player's log file."""

    def __init__(
        self,
        user_id: str = "",
        *,
        context: ParserContext | None = None,
        regex_timeout_ms: float = DEFAULT_TIMEOUT_MS,
        on_profile_changed: ProfileChangedHandler | None = None,
        rules: Iterable[ClassifierRule] = CLASSIFIER_RULES,
    ) -> None:
        self.user_id = user_id
        self.context = context or ParserContext()
        self._regex_timeout_ms = regex_timeout_ms
        self._on_profile_changed = on_profile_changed
        self._rules = tuple(rules)

    def search(self, pattern: re.Pattern[str], text: str) -> re.Match[str] | None:
        return safe_search(pattern, text, self._regex_timeout_ms)

    def notify_profile_changed(self, name: str) -> None:
        logger.info("Local player is now %s", name)
        if self._on_profile_changed is None:
            return
        try:
            self._on_profile_changed(name)
        except Exception:
            logger.exception("Error in profile change handler")

    def extract_timestamp(self, line: str) -> str:
        """Timestamp of the ``<...>`` prefix, or now when absent."""
        match = self.search(_TIMESTAMP_PREFIX_RE, line)
        if match is None:
            return utc_now_iso()
        return parse_log_timestamp(match.group(1))

    def parse_line(self, line: str) -> Log | None:
        """Classify one raw line, or return ``None`` if it is not an event."""
        text = line.rstrip("\r\n")
        if not text.strip():
            return None

        timestamp = self.extract_timestamp(text)
        cutoff = self.context.only_process_after
        if cutoff is not None and parse_iso(timestamp) < parse_iso(cutoff):
            return None

        for rule in self._rules:
            hit = rule.detect(text, self)
            if hit is None:
                continue
            classified = rule.build(hit, text, self)
            if classified is None:
                logger.debug("Rule %s matched but required fields are missing", rule.name)
                return None
            return Log(
                id=generate_id(timestamp, text),
                user_id=self.user_id,
                player=self.context.player_name,
                emoji=classified.emoji,
                line=classified.line[:MAX_LINE_LENGTH],
                timestamp=timestamp,
                original=text[:MAX_ORIGINAL_LENGTH],
                open=False,
                event_type=rule.event_type.value,
                metadata=classified.metadata,
            )

        return None

    def parse_lines(self, lines: Iterable[str]) -> list[Log]:
        """Classify lines in order; context changes carry to later lines."""
        logs = []
        for line in lines:
            log = self.parse_line(line)
            if log is not None:
                logs.append(log)
        return logs
