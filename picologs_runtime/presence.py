"""
Friend and group roster merging.

The server is the source of truth for membership: a fresh roster replaces
the local one, and entries missing from it are dropped. The only local state
carried over is presence (``is_online`` / ``is_connected``), and only where
the fresh entry leaves it unset.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, TypeVar

from picologs_runtime.types import Friend, Group, GroupMember

logger = logging.getLogger(__name__)

_WithPresence = TypeVar("_WithPresence", Friend, GroupMember)


def _carry_presence(fresh: _WithPresence, existing: _WithPresence | None) -> _WithPresence:
    if existing is None:
        return fresh
    return fresh.model_copy(
        update={
            "is_online": fresh.is_online if fresh.is_online is not None else existing.is_online,
            "is_connected": (
                fresh.is_connected if fresh.is_connected is not None else existing.is_connected
            ),
        }
    )


def merge_friends(existing: list[Friend], fresh: list[Friend]) -> list[Friend]:
    """Replace ``existing`` with ``fresh``, keeping known presence as a fallback."""
    by_id = {friend.id: friend for friend in existing}
    merged: dict[str, Friend] = {}
    for friend in fresh:
        merged[friend.id] = _carry_presence(friend, by_id.get(friend.id))
    return list(merged.values())


def merge_groups(existing: list[Group], fresh: list[Group]) -> list[Group]:
    """Groups carry no local state; the fresh list wins, deduplicated by id."""
    merged: dict[str, Group] = {}
    for group in fresh:
        merged[group.id] = group
    return list(merged.values())


def merge_group_members(
    existing: Mapping[str, list[GroupMember]],
    fresh: Mapping[str, list[GroupMember]],
) -> dict[str, list[GroupMember]]:
    """Per-group member merge; groups absent from ``fresh`` are dropped."""
    merged: dict[str, list[GroupMember]] = {}
    for group_id, members in fresh.items():
        known = {member.user_id: member for member in existing.get(group_id, [])}
        merged[group_id] = [_carry_presence(member, known.get(member.user_id)) for member in members]
    return merged


def _ids_differ(existing: Iterable[str], fresh: Iterable[str]) -> bool:
    return set(existing) != set(fresh)


def friends_have_changed(existing: list[Friend], fresh: list[Friend]) -> bool:
    """Cheap check for differences that matter to the UI."""
    if len(existing) != len(fresh):
        return True
    if _ids_differ((f.id for f in existing), (f.id for f in fresh)):
        return True

    by_id = {friend.id: friend for friend in existing}
    for friend in fresh:
        old = by_id[friend.id]
        if (
            old.friend_username != friend.friend_username
            or old.friend_player != friend.friend_player
            or old.is_online != friend.is_online
            or old.is_connected != friend.is_connected
            or old.status != friend.status
        ):
            return True
    return False


def groups_have_changed(existing: list[Group], fresh: list[Group]) -> bool:
    if len(existing) != len(fresh):
        return True
    if _ids_differ((g.id for g in existing), (g.id for g in fresh)):
        return True

    by_id = {group.id: group for group in existing}
    for group in fresh:
        old = by_id[group.id]
        if old.name != group.name or old.member_count != group.member_count or old.avatar != group.avatar:
            return True
    return False


def group_members_have_changed(
    existing: Mapping[str, list[GroupMember]],
    fresh: Mapping[str, list[GroupMember]],
) -> bool:
    if _ids_differ(existing.keys(), fresh.keys()):
        return True
    for group_id, members in fresh.items():
        old_members = existing[group_id]
        if len(old_members) != len(members):
            return True
        if _ids_differ((m.user_id for m in old_members), (m.user_id for m in members)):
            return True
        by_id = {member.user_id: member for member in old_members}
        for member in members:
            old = by_id[member.user_id]
            if (
                old.username != member.username
                or old.player != member.player
                or old.role != member.role
                or old.is_online != member.is_online
                or old.is_connected != member.is_connected
            ):
                return True
    return False


class Roster:
    """The local working set of friends, groups and group members."""

    def __init__(self) -> None:
        self.friends: list[Friend] = []
        self.groups: list[Group] = []
        self.group_members: dict[str, list[GroupMember]] = {}

    @property
    def group_ids(self) -> list[str]:
        return [group.id for group in self.groups]

    def replace_friends(self, fresh: list[Friend]) -> bool:
        """Merge a fresh friend list in; returns whether anything visible changed."""
        merged = merge_friends(self.friends, fresh)
        changed = friends_have_changed(self.friends, merged)
        self.friends = merged
        return changed

    def replace_groups(self, fresh: list[Group]) -> bool:
        merged = merge_groups(self.groups, fresh)
        changed = groups_have_changed(self.groups, merged)
        self.groups = merged
        known = set(self.group_ids)
        self.group_members = {gid: m for gid, m in self.group_members.items() if gid in known}
        return changed

    def replace_group_members(self, fresh: Mapping[str, list[GroupMember]]) -> bool:
        merged = merge_group_members(self.group_members, fresh)
        changed = group_members_have_changed(self.group_members, merged)
        self.group_members = merged
        return changed

    def set_online(self, user_id: str, online: bool) -> bool:
        """Apply a presence push; returns whether the user is known."""
        found = False
        for index, friend in enumerate(self.friends):
            if friend.friend_user_id == user_id:
                self.friends[index] = friend.model_copy(update={"is_online": online, "is_connected": online})
                found = True
        for group_id, members in self.group_members.items():
            for index, member in enumerate(members):
                if member.user_id == user_id:
                    members[index] = member.model_copy(update={"is_online": online, "is_connected": online})
                    found = True
        if not found:
            logger.debug("Presence update for unknown user %s", user_id)
        return found
