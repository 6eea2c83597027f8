"""Turn one ``/sync`` response body into ordered notifications."""

from __future__ import annotations

from typing import Any, Iterable

from .crypto import CryptoClient
from .emitter import EventEmitter
from .events import (
    ACCOUNT_DATA,
    CREATE_EVENT,
    ENCRYPTED_EVENT,
    GROUP_INVITE,
    GROUP_JOIN,
    GROUP_LEAVE,
    MEMBER_EVENT,
    MESSAGE_EVENT,
    ROOM_ACCOUNT_DATA,
    ROOM_ARCHIVED,
    ROOM_DECRYPTED_EVENT,
    ROOM_ENCRYPTED_EVENT,
    ROOM_EVENT,
    ROOM_FAILED_DECRYPTION,
    ROOM_INVITE,
    ROOM_JOIN,
    ROOM_LEAVE,
    ROOM_MESSAGE,
    ROOM_UPGRADED,
    TOMBSTONE_EVENT,
    EncryptedRoomEvent,
    EventKind,
)
from .logging import get_logger
from .preprocessors import PreprocessorChain

logger = get_logger(__name__)


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _events(section: Any) -> list[dict[str, Any]]:
    """``section.events`` as a list of dicts, tolerating missing parts."""
    return [e for e in _list(_dict(section).get("events")) if isinstance(e, dict)]


def _age(event: dict[str, Any]) -> int | float:
    age = _dict(event.get("unsigned")).get("age")
    if isinstance(age, bool) or not isinstance(age, (int, float)):
        return 0
    return age


def select_membership_event(
    events: Iterable[dict[str, Any]],
    user_id: str,
    membership: str | None = None,
) -> dict[str, Any] | None:
    """Pick the most recent own-user membership event.

    The event with the smallest ``unsigned.age`` wins (a missing age counts
    as 0); on equal ages the later event in the list wins. With
    ``membership`` set, only events whose ``content.membership`` matches are
    considered.
    """
    selected: dict[str, Any] | None = None
    for event in events:
        if event.get("type") != MEMBER_EVENT or event.get("state_key") != user_id:
            continue
        if membership is not None:
            if _dict(event.get("content")).get("membership") != membership:
                continue
        if selected is not None and _age(selected) < _age(event):
            continue
        selected = event
    return selected


class SyncProcessor:
    """Classifies a sync response and emits notifications in a fixed order.

    Order per call: global account data, groups, left rooms, invited rooms,
    then joined rooms. Each joined room emits ``room.join`` the first time
    it is seen, then its account data, then its timeline.
    """

    def __init__(
        self,
        user_id: str,
        emitter: EventEmitter,
        preprocessors: PreprocessorChain,
        *,
        crypto: CryptoClient | None = None,
        client: Any = None,
    ) -> None:
        self.user_id = user_id
        self.emitter = emitter
        self.preprocessors = preprocessors
        self.crypto = crypto
        self.client = client
        self._joined_room_ids: set[str] = set()

        # Lets the crypto backend learn room encryption from timeline state
        on_room_event = getattr(crypto, "on_room_event", None)
        if on_room_event is not None:
            emitter.on(ROOM_EVENT, on_room_event)

    @property
    def joined_room_ids(self) -> frozenset[str]:
        return frozenset(self._joined_room_ids)

    def mark_joined(self, room_ids: Iterable[str]) -> None:
        self._joined_room_ids.update(room_ids)

    async def process_sync(self, body: dict[str, Any]) -> None:
        body = _dict(body)

        for event in _events(body.get("account_data")):
            await self.emitter.emit(ACCOUNT_DATA, event)

        groups = _dict(body.get("groups"))
        for section, channel in (
            ("leave", GROUP_LEAVE),
            ("join", GROUP_JOIN),
            ("invite", GROUP_INVITE),
        ):
            for group_id, info in _dict(groups.get(section)).items():
                await self.emitter.emit(channel, group_id, info)

        rooms = _dict(body.get("rooms"))
        for room_id, room in _dict(rooms.get("leave")).items():
            await self._process_left_room(room_id, _dict(room))
        for room_id, room in _dict(rooms.get("invite")).items():
            await self._process_invited_room(room_id, _dict(room))
        for room_id, room in _dict(rooms.get("join")).items():
            await self._process_joined_room(room_id, _dict(room))

        if self.crypto is not None:
            device_lists = _dict(body.get("device_lists"))
            await self.crypto.update_sync_data(
                _events(body.get("to_device")),
                _dict(body.get("device_one_time_keys_count")),
                _list(body.get("device_unused_fallback_key_types")),
                _list(device_lists.get("changed")),
                _list(device_lists.get("left")),
            )

    async def _process_left_room(self, room_id: str, room: dict[str, Any]) -> None:
        leave_event = select_membership_event(
            _events(room.get("timeline")), self.user_id
        )
        if leave_event is not None:
            leave_event = await self._preprocess(leave_event)
            await self.emitter.emit(ROOM_LEAVE, room_id, leave_event)
        else:
            logger.debug("matrix.sync.leave_without_event", room_id=room_id)

        for event in _events(room.get("account_data")):
            await self.emitter.emit(ROOM_ACCOUNT_DATA, room_id, event)

    async def _process_invited_room(self, room_id: str, room: dict[str, Any]) -> None:
        invite_event = select_membership_event(
            _events(room.get("invite_state")), self.user_id, membership="invite"
        )
        if invite_event is None:
            logger.debug("matrix.sync.invite_without_event", room_id=room_id)
            return
        invite_event = await self._preprocess(invite_event)
        await self.emitter.emit(ROOM_INVITE, room_id, invite_event)

    async def _process_joined_room(self, room_id: str, room: dict[str, Any]) -> None:
        if room_id not in self._joined_room_ids:
            self._joined_room_ids.add(room_id)
            await self.emitter.emit(ROOM_JOIN, room_id)

        for event in _events(room.get("account_data")):
            await self.emitter.emit(ROOM_ACCOUNT_DATA, room_id, event)

        for event in _events(room.get("timeline")):
            if event.get("type") == ENCRYPTED_EVENT and self.crypto is not None:
                event = await self._decrypt(room_id, event)

            event = await self._preprocess(event)
            await self.emitter.emit(ROOM_EVENT, room_id, event)

            event_type = event.get("type")
            if event_type == MESSAGE_EVENT:
                await self.emitter.emit(ROOM_MESSAGE, room_id, event)
            elif event_type == TOMBSTONE_EVENT and event.get("state_key") == "":
                await self.emitter.emit(ROOM_ARCHIVED, room_id, event)
            elif event_type == CREATE_EVENT and _dict(event.get("content")).get(
                "predecessor"
            ):
                await self.emitter.emit(ROOM_UPGRADED, room_id, event)

    async def _decrypt(self, room_id: str, event: dict[str, Any]) -> dict[str, Any]:
        assert self.crypto is not None
        if not await self.crypto.is_room_encrypted(room_id):
            return event

        await self.emitter.emit(ROOM_ENCRYPTED_EVENT, room_id, event)
        try:
            decrypted = await self.crypto.decrypt_room_event(
                EncryptedRoomEvent(raw=event), room_id
            )
        except Exception as exc:
            logger.warning(
                "matrix.decrypt.failed",
                room_id=room_id,
                event_id=event.get("event_id"),
                sender=event.get("sender"),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self.emitter.emit(ROOM_FAILED_DECRYPTION, room_id, event, exc)
            return event

        await self.emitter.emit(ROOM_DECRYPTED_EVENT, room_id, decrypted.raw)
        return decrypted.raw

    async def _preprocess(self, event: dict[str, Any]) -> dict[str, Any]:
        return await self.preprocessors.process(
            event, self.client, EventKind.ROOM_EVENT
        )
