"""Room upgrade history: walk predecessor and tombstone links between rooms."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import RoomUpgradeError
from .events import CREATE_EVENT, TOMBSTONE_EVENT
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_ROOM_VERSION = "1"
MAX_UPGRADE_CHAIN = 1000


class RoomStateReader(Protocol):
    async def get_room_state(self, room_id: str) -> list[dict[str, Any]]: ...

    async def get_room_state_event(
        self, room_id: str, event_type: str, state_key: str = ""
    ) -> dict[str, Any]: ...


@dataclass(frozen=True, slots=True)
class RoomReference:
    """One room in an upgrade chain.

    ``ref_event_id`` is the event linking this room to its neighbour in the
    direction of the walk: the tombstone for older rooms, the create event
    for newer rooms. None when no such link exists.
    """

    room_id: str
    version: str
    ref_event_id: str | None = None


@dataclass(slots=True)
class RoomUpgradeHistory:
    current: RoomReference
    previous: list[RoomReference] = field(default_factory=list)
    newer: list[RoomReference] = field(default_factory=list)


def _find_state(
    state: list[dict[str, Any]], event_type: str, state_key: str = ""
) -> dict[str, Any] | None:
    for event in state:
        if not isinstance(event, dict):
            continue
        if event.get("type") == event_type and event.get("state_key") == state_key:
            return event
    return None


def _content(event: dict[str, Any] | None) -> dict[str, Any]:
    if event is None:
        return {}
    content = event.get("content")
    return content if isinstance(content, dict) else {}


def _version_of(create_content: dict[str, Any]) -> str:
    version = create_content.get("room_version")
    return str(version) if version else DEFAULT_ROOM_VERSION


def _predecessor_of(create_content: dict[str, Any]) -> str | None:
    predecessor = create_content.get("predecessor")
    if not isinstance(predecessor, dict):
        return None
    room_id = predecessor.get("room_id")
    return room_id if isinstance(room_id, str) and room_id else None


async def _read_state(reader: RoomStateReader, room_id: str) -> list[dict[str, Any]]:
    """Full room state, or an empty list when it cannot be read."""
    try:
        state = await reader.get_room_state(room_id)
    except Exception as exc:
        logger.debug(
            "matrix.upgrade.state_unavailable",
            room_id=room_id,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        return []
    return state if isinstance(state, list) else []


async def _read_state_content(
    reader: RoomStateReader, room_id: str, event_type: str
) -> dict[str, Any] | None:
    try:
        content = await reader.get_room_state_event(room_id, event_type, "")
    except Exception as exc:
        logger.debug(
            "matrix.upgrade.state_event_unavailable",
            room_id=room_id,
            event_type=event_type,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        return None
    return content if isinstance(content, dict) else None


async def _walk_predecessors(
    reader: RoomStateReader, room_id: str, create_content: dict[str, Any]
) -> list[RoomReference]:
    previous: list[RoomReference] = []
    seen: set[str] = set()
    find_room_id = room_id

    while len(previous) < MAX_UPGRADE_CHAIN:
        prev_room_id = _predecessor_of(create_content)
        if prev_room_id is None or prev_room_id == find_room_id:
            break
        if prev_room_id in seen:
            break

        state = await _read_state(reader, prev_room_id)
        tombstone = _find_state(state, TOMBSTONE_EVENT)
        create = _find_state(state, CREATE_EVENT)

        ref_event_id = None
        if tombstone is not None:
            if _content(tombstone).get("replacement_room") == find_room_id:
                ref_event_id = tombstone.get("event_id")

        previous.append(
            RoomReference(
                room_id=prev_room_id,
                version=_version_of(_content(create)),
                ref_event_id=ref_event_id,
            )
        )
        seen.add(prev_room_id)

        next_content = await _read_state_content(reader, prev_room_id, CREATE_EVENT)
        if next_content is None:
            break
        find_room_id = prev_room_id
        create_content = next_content

    return previous


async def _walk_tombstones(
    reader: RoomStateReader, room_id: str
) -> list[RoomReference]:
    newer: list[RoomReference] = []
    seen: set[str] = set()
    find_room_id = room_id

    while len(newer) < MAX_UPGRADE_CHAIN:
        tombstone = await _read_state_content(reader, find_room_id, TOMBSTONE_EVENT)
        if tombstone is None:
            break
        new_room_id = tombstone.get("replacement_room")
        if not isinstance(new_room_id, str) or not new_room_id:
            break
        if new_room_id == find_room_id or new_room_id in seen:
            break

        state = await _read_state(reader, new_room_id)
        create = _find_state(state, CREATE_EVENT)

        ref_event_id = None
        if create is not None:
            if _predecessor_of(_content(create)) == find_room_id:
                ref_event_id = create.get("event_id")

        newer.append(
            RoomReference(
                room_id=new_room_id,
                version=_version_of(_content(create)),
                ref_event_id=ref_event_id,
            )
        )
        seen.add(new_room_id)
        find_room_id = new_room_id

    return newer


async def get_room_upgrade_history(
    reader: RoomStateReader, room_id: str
) -> RoomUpgradeHistory:
    """Resolve the rooms ``room_id`` replaced and the rooms that replaced it.

    Rooms whose state cannot be read end the chain in that direction. Only a
    failure to read the starting room's create event is raised, as
    :class:`RoomUpgradeError`.
    """
    try:
        create_content = await reader.get_room_state_event(room_id, CREATE_EVENT, "")
    except Exception as exc:
        raise RoomUpgradeError(room_id, exc) from exc
    if not isinstance(create_content, dict):
        raise RoomUpgradeError(room_id)

    current = RoomReference(
        room_id=room_id,
        version=_version_of(create_content),
        ref_event_id=None,
    )
    previous = await _walk_predecessors(reader, room_id, create_content)
    newer = await _walk_tombstones(reader, room_id)

    logger.debug(
        "matrix.upgrade.history",
        room_id=room_id,
        previous=len(previous),
        newer=len(newer),
    )
    return RoomUpgradeHistory(current=current, previous=previous, newer=newer)
