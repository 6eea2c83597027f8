"""Power-level evaluation against a room's ``m.room.power_levels`` content."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import PermissionEvaluationError
from .events import POWER_LEVELS_EVENT

DEFAULT_STATE_LEVEL = 50
DEFAULT_EVENT_LEVEL = 0
DEFAULT_USER_LEVEL = 0


class PowerLevelAction(str, Enum):
    """Actions gated by a top-level (or dotted) power-levels field."""

    BAN = "ban"
    KICK = "kick"
    REDACT = "redact"
    INVITE = "invite"
    STATE_DEFAULT = "state_default"
    EVENTS_DEFAULT = "events_default"
    NOTIFY_ROOM = "notifications.room"


ACTION_DEFAULTS: dict[PowerLevelAction, int] = {
    PowerLevelAction.BAN: 50,
    PowerLevelAction.KICK: 50,
    PowerLevelAction.REDACT: 50,
    PowerLevelAction.INVITE: 0,
    PowerLevelAction.STATE_DEFAULT: DEFAULT_STATE_LEVEL,
    PowerLevelAction.EVENTS_DEFAULT: DEFAULT_EVENT_LEVEL,
    PowerLevelAction.NOTIFY_ROOM: 50,
}


@dataclass(frozen=True, slots=True)
class PowerLevelBounds:
    can_modify: bool
    maximum_possible_level: int | float


StateEventReader = Callable[[str, str, str], Awaitable[dict[str, Any] | None]]


def is_power_level(value: Any) -> bool:
    """True for finite numbers; strings, booleans and NaN do not count."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _lookup(content: Any, *path: str) -> Any:
    value = content
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def required_level_for_event(
    content: dict[str, Any], event_type: str, is_state: bool
) -> int | float:
    override = _lookup(content, "events", event_type)
    if is_power_level(override):
        return override

    default_key = "state_default" if is_state else "events_default"
    default = content.get(default_key)
    if is_power_level(default):
        return default

    return DEFAULT_STATE_LEVEL if is_state else DEFAULT_EVENT_LEVEL


def required_level_for_action(
    content: dict[str, Any], action: PowerLevelAction | str
) -> int | float:
    action = PowerLevelAction(action)
    level = _lookup(content, *action.value.split("."))
    if is_power_level(level):
        return level
    return ACTION_DEFAULTS[action]


def resolve_user_level(content: dict[str, Any], user_id: str) -> int | float:
    explicit = _lookup(content, "users", user_id)
    if is_power_level(explicit):
        return explicit
    users_default = content.get("users_default")
    if is_power_level(users_default):
        return users_default
    return DEFAULT_USER_LEVEL


def compute_change_bounds(
    content: dict[str, Any], my_user_id: str, target_user_id: str
) -> PowerLevelBounds:
    """Work out how far ``my_user_id`` may change ``target_user_id``'s level."""
    my_level = resolve_user_level(content, my_user_id)
    required = required_level_for_event(content, POWER_LEVELS_EVENT, True)
    if my_level < required:
        # We cannot send a power levels event at all
        return PowerLevelBounds(can_modify=False, maximum_possible_level=0)

    if my_user_id == target_user_id:
        return PowerLevelBounds(can_modify=True, maximum_possible_level=my_level)

    target_level = resolve_user_level(content, target_user_id)
    if target_level >= my_level:
        return PowerLevelBounds(can_modify=False, maximum_possible_level=my_level)
    return PowerLevelBounds(can_modify=True, maximum_possible_level=my_level)


class PowerLevelEvaluator:
    """Answers permission questions by fetching the room's power levels.

    ``read_state_event`` is called as ``(room_id, "m.room.power_levels", "")``
    and returns the event content, or None when the room has none.
    """

    def __init__(self, read_state_event: StateEventReader) -> None:
        self._read_state_event = read_state_event

    async def _power_levels(self, room_id: str) -> dict[str, Any]:
        content = await self._read_state_event(room_id, POWER_LEVELS_EVENT, "")
        if not isinstance(content, dict):
            raise PermissionEvaluationError()
        return content

    async def user_has_power_level_for(
        self, user_id: str, room_id: str, event_type: str, is_state: bool
    ) -> bool:
        content = await self._power_levels(room_id)
        required = required_level_for_event(content, event_type, is_state)
        return resolve_user_level(content, user_id) >= required

    async def user_has_power_level_for_action(
        self, user_id: str, room_id: str, action: PowerLevelAction | str
    ) -> bool:
        content = await self._power_levels(room_id)
        required = required_level_for_action(content, action)
        return resolve_user_level(content, user_id) >= required

    async def calculate_power_level_change_bounds_on(
        self, my_user_id: str, target_user_id: str, room_id: str
    ) -> PowerLevelBounds:
        content = await self._power_levels(room_id)
        return compute_change_bounds(content, my_user_id, target_user_id)
