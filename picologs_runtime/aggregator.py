"""
Killing spree clustering.

Runs after every sequencing pass. Kills by the same killer whose consecutive
timestamps are less than the window apart are folded into one composite
``killing_spree`` event; the composite takes the position of its first kill
and its members disappear from the top level.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Iterable

from picologs_runtime.parser import get_name
from picologs_runtime.sequencer import timestamp_key
from picologs_runtime.types import EventType, Log

DEFAULT_SPREE_WINDOW = timedelta(minutes=2)
DEFAULT_EXCLUDED_DAMAGE_TYPES = frozenset({"VehicleDestruction"})

SPREE_EMOJI = "🎯"


def _numeric_id(value: object) -> int | None:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


def is_spree_candidate(log: Log, excluded_damage_types: Iterable[str] = DEFAULT_EXCLUDED_DAMAGE_TYPES) -> bool:
    """Whether a log may take part in a killing spree."""
    if log.event_type != EventType.ACTOR_DEATH.value or log.children:
        return False
    metadata = log.metadata or {}
    killer_id = _numeric_id(metadata.get("killerId"))
    if not killer_id:
        return False
    if killer_id == _numeric_id(metadata.get("victimId")):
        return False
    return metadata.get("damageType") not in set(excluded_damage_types)


def _build_spree(run: list[Log]) -> Log:
    first = run[0]
    killer = get_name((first.metadata or {}).get("killerName"))
    children = [member.model_copy(update={"children": None}) for member in run]
    return first.model_copy(
        update={
            "id": f"{first.id}-spree",
            "emoji": SPREE_EMOJI,
            "line": f"{killer} is on a killing spree ({len(run)} kills)",
            "event_type": EventType.KILLING_SPREE.value,
            "metadata": {**(first.metadata or {}), "killCount": len(run)},
            "open": False,
            "children": children,
        }
    )


def group_killing_sprees(
    logs: list[Log],
    window: timedelta = DEFAULT_SPREE_WINDOW,
    excluded_damage_types: Iterable[str] = DEFAULT_EXCLUDED_DAMAGE_TYPES,
) -> list[Log]:
    """Fold clustered kills of a timestamp-sorted list into spree composites."""
    excluded = frozenset(excluded_damage_types)

    by_killer: dict[str, list[Log]] = defaultdict(list)
    for log in logs:
        if is_spree_candidate(log, excluded):
            by_killer[str((log.metadata or {})["killerId"])].append(log)

    sprees: dict[str, Log] = {}  # first member id -> composite
    consumed: set[str] = set()

    for kills in by_killer.values():
        run: list[Log] = []
        for kill in kills:
            if run and timestamp_key(kill.timestamp) - timestamp_key(run[-1].timestamp) >= window:
                if len(run) >= 2:
                    sprees[run[0].id] = _build_spree(run)
                    consumed.update(member.id for member in run)
                run = []
            run.append(kill)
        if len(run) >= 2:
            sprees[run[0].id] = _build_spree(run)
            consumed.update(member.id for member in run)

    if not sprees:
        return list(logs)

    result: list[Log] = []
    for log in logs:
        if log.id in sprees:
            result.append(sprees[log.id])
        elif log.id not in consumed:
            result.append(log)
    return result


def flatten_sprees(logs: Iterable[Log]) -> list[Log]:
    """Replace spree composites by their member kills."""
    flat: list[Log] = []
    for log in logs:
        if log.is_spree and log.children:
            flat.extend(child.model_copy(update={"children": None}) for child in log.children)
        elif log.is_spree:
            continue
        else:
            flat.append(log)
    return flat
