"""Room event envelopes and the channel names emitted by the sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

# Event types the sync engine inspects
MEMBER_EVENT = "m.room.member"
MESSAGE_EVENT = "m.room.message"
CREATE_EVENT = "m.room.create"
TOMBSTONE_EVENT = "m.room.tombstone"
POWER_LEVELS_EVENT = "m.room.power_levels"
ENCRYPTED_EVENT = "m.room.encrypted"
ENCRYPTION_EVENT = "m.room.encryption"
DIRECT_ACCOUNT_DATA = "m.direct"

# Emitted channels
ACCOUNT_DATA = "account_data"
ROOM_ACCOUNT_DATA = "room.account_data"
ROOM_LEAVE = "room.leave"
ROOM_INVITE = "room.invite"
ROOM_JOIN = "room.join"
ROOM_EVENT = "room.event"
ROOM_MESSAGE = "room.message"
ROOM_ARCHIVED = "room.archived"
ROOM_UPGRADED = "room.upgraded"
ROOM_ENCRYPTED_EVENT = "room.encrypted_event"
ROOM_DECRYPTED_EVENT = "room.decrypted_event"
ROOM_FAILED_DECRYPTION = "room.failed_decryption"
GROUP_JOIN = "unstable.group.join"
GROUP_LEAVE = "unstable.group.leave"
GROUP_INVITE = "unstable.group.invite"

ALL_CHANNELS = (
    ACCOUNT_DATA,
    ROOM_ACCOUNT_DATA,
    ROOM_LEAVE,
    ROOM_INVITE,
    ROOM_JOIN,
    ROOM_EVENT,
    ROOM_MESSAGE,
    ROOM_ARCHIVED,
    ROOM_UPGRADED,
    ROOM_ENCRYPTED_EVENT,
    ROOM_DECRYPTED_EVENT,
    ROOM_FAILED_DECRYPTION,
    GROUP_JOIN,
    GROUP_LEAVE,
    GROUP_INVITE,
)


class EventKind(str, Enum):
    """Where an event came from, as seen by preprocessors."""

    ROOM_EVENT = "room"
    EPHEMERAL_EVENT = "ephemeral"


def is_room_id(value: str) -> bool:
    return isinstance(value, str) and value.startswith("!")


def is_room_alias(value: str) -> bool:
    return isinstance(value, str) and value.startswith("#")


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True, slots=True)
class RoomEvent:
    """Read-only view over a raw room event payload.

    The raw dict is kept as delivered so it stays retrievable after a
    decrypted event replaces the logical type and content.
    """

    raw: dict[str, Any]

    @property
    def type(self) -> str | None:
        value = self.raw.get("type")
        return value if isinstance(value, str) else None

    @property
    def state_key(self) -> str | None:
        value = self.raw.get("state_key")
        return value if isinstance(value, str) else None

    @property
    def is_state(self) -> bool:
        return self.state_key is not None

    @property
    def content(self) -> dict[str, Any]:
        return _as_dict(self.raw.get("content"))

    @property
    def sender(self) -> str | None:
        return self.raw.get("sender")

    @property
    def event_id(self) -> str | None:
        return self.raw.get("event_id")

    @property
    def unsigned(self) -> dict[str, Any]:
        return _as_dict(self.raw.get("unsigned"))

    @property
    def age(self) -> int | float | None:
        age = self.unsigned.get("age")
        if isinstance(age, bool) or not isinstance(age, (int, float)):
            return None
        return age


@dataclass(frozen=True, slots=True)
class EncryptedRoomEvent(RoomEvent):
    """An ``m.room.encrypted`` event awaiting decryption."""

    @property
    def algorithm(self) -> str | None:
        return self.content.get("algorithm")

    @property
    def ciphertext(self) -> Any:
        return self.content.get("ciphertext")

    @property
    def session_id(self) -> str | None:
        return self.content.get("session_id")
