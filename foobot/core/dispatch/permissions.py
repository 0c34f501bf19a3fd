from __future__ import annotations

from enum import Enum
from typing import AbstractSet

from foobot.core.dispatch.command import Origin

MODERATOR_BADGES = frozenset({"broadcaster", "moderator"})
# Twitch shows "founder" instead of "subscriber" for a channel's first subscribers.
SUBSCRIBER_BADGES = frozenset({"broadcaster", "moderator", "subscriber", "founder"})


class Permission(str, Enum):
    """Who may run a command. Super users pass every level."""

    ALL = "all"
    SUBS = "subs"
    MODS = "mods"
    SUPER = "super"

    @classmethod
    def from_string(cls, value: str) -> "Permission":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"unknown permission {value!r}") from None


def is_permitted(permission: Permission, origin: Origin, super_users: AbstractSet[str] = frozenset()) -> bool:
    if origin.sender in super_users:
        return True
    if permission is Permission.ALL:
        return True
    if permission is Permission.SUBS:
        return bool(origin.badges & SUBSCRIBER_BADGES)
    if permission is Permission.MODS:
        return bool(origin.badges & MODERATOR_BADGES)
    return False
