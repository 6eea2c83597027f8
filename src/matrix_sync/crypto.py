"""End-to-end encryption collaborator used by the sync engine and client."""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

import nio

from .availability import NioAvailability, check_nio_availability
from .errors import CryptoNotEnabledError, DecryptionError
from .events import ENCRYPTED_EVENT, ENCRYPTION_EVENT, EncryptedRoomEvent, RoomEvent
from .logging import get_logger

logger = get_logger(__name__)

StateEventReader = Callable[[str, str, str], Awaitable[dict[str, Any] | None]]


@runtime_checkable
class CryptoClient(Protocol):
    """Operations the sync engine needs from an encryption backend."""

    async def is_room_encrypted(self, room_id: str) -> bool: ...

    async def decrypt_room_event(
        self, event: EncryptedRoomEvent, room_id: str
    ) -> RoomEvent: ...

    async def encrypt_room_event(
        self, room_id: str, event_type: str, content: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def update_sync_data(
        self,
        to_device_messages: list[dict[str, Any]],
        one_time_key_counts: dict[str, int],
        unused_fallback_key_types: list[str],
        changed_device_lists: list[str],
        left_device_lists: list[str],
    ) -> None: ...


def require_crypto(
    func: Callable[..., Awaitable[Any]],
) -> Callable[..., Awaitable[Any]]:
    """
    Decorator for client methods that only work with encryption enabled.

    Raises CryptoNotEnabledError before the wrapped method runs, so no
    request reaches the homeserver.
    """

    @functools.wraps(func)
    async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        if getattr(self, "crypto", None) is None:
            raise CryptoNotEnabledError(func.__name__)
        return await func(self, *args, **kwargs)

    return wrapper


class NioCryptoClient:
    """CryptoClient backed by a matrix-nio ``AsyncClient`` with an Olm store.

    The nio client is used only for its crypto state: the Olm machine and
    the device store. It never syncs on its own; sync data is handed over
    through :meth:`update_sync_data`, so its room list stays empty.

    Room encryption is learned from ``m.room.encryption`` state seen on the
    ``room.event`` channel (:meth:`on_room_event`) and, for rooms not seen
    yet, from a one-off state lookup through ``read_state_event``.
    """

    def __init__(
        self,
        nio_client: Any,
        *,
        read_state_event: StateEventReader | None = None,
        _nio_availability: NioAvailability | None = None,
    ) -> None:
        availability = (
            _nio_availability
            if _nio_availability is not None
            else check_nio_availability()
        )
        reason = availability.missing_reason
        if reason is not None:
            raise CryptoNotEnabledError(reason)
        self._client = nio_client
        self._encrypted_rooms: set[str] = set()
        self._plain_rooms: set[str] = set()
        self.read_state_event = read_state_event

    @property
    def nio_client(self) -> Any:
        return self._client

    def mark_room_encrypted(self, room_id: str) -> None:
        self._encrypted_rooms.add(room_id)
        self._plain_rooms.discard(room_id)

    async def on_room_event(self, room_id: str, event: dict[str, Any]) -> None:
        """Track encryption from timeline state events."""
        if event.get("type") != ENCRYPTION_EVENT or event.get("state_key") != "":
            return
        if room_id not in self._encrypted_rooms:
            logger.debug("matrix.e2ee.room_encrypted", room_id=room_id)
        self.mark_room_encrypted(room_id)

    async def is_room_encrypted(self, room_id: str) -> bool:
        if room_id in self._encrypted_rooms:
            return True
        rooms = getattr(self._client, "rooms", None) or {}
        if getattr(rooms.get(room_id), "encrypted", False):
            return True
        if self.read_state_event is None or room_id in self._plain_rooms:
            return False

        try:
            content = await self.read_state_event(room_id, ENCRYPTION_EVENT, "")
        except Exception as exc:
            logger.debug(
                "matrix.e2ee.encryption_state_unavailable",
                room_id=room_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return False

        if isinstance(content, dict) and content.get("algorithm"):
            self.mark_room_encrypted(room_id)
            return True
        self._plain_rooms.add(room_id)
        return False

    async def decrypt_room_event(
        self, event: EncryptedRoomEvent, room_id: str
    ) -> RoomEvent:
        raw = dict(event.raw)
        raw.setdefault("room_id", room_id)
        event_id = raw.get("event_id")

        parsed = nio.Event.parse_event(raw)
        if not isinstance(parsed, nio.MegolmEvent):
            raise DecryptionError(event_id, "not a megolm event")

        decrypt_fn = getattr(self._client, "decrypt_event", None)
        if decrypt_fn is None:
            raise DecryptionError(event_id, "client cannot decrypt")
        try:
            decrypted = decrypt_fn(parsed)
        except Exception as exc:
            await self._request_room_key(parsed)
            raise DecryptionError(event_id, str(exc)) from exc

        if isinstance(decrypted, (nio.BadEvent, nio.UnknownBadEvent)):
            await self._request_room_key(parsed)
            raise DecryptionError(
                event_id, getattr(decrypted, "reason", None) or "bad event"
            )

        source = getattr(decrypted, "source", None)
        if not isinstance(source, dict):
            raise DecryptionError(event_id, "decrypted event has no payload")
        return RoomEvent(raw=source)

    async def encrypt_room_event(
        self, room_id: str, event_type: str, content: dict[str, Any]
    ) -> dict[str, Any]:
        olm = getattr(self._client, "olm", None)
        if olm is None:
            raise CryptoNotEnabledError("encrypt_room_event")

        should_share = getattr(olm, "should_share_group_session", None)
        share_fn = getattr(self._client, "share_group_session", None)
        if should_share is not None and share_fn is not None and should_share(room_id):
            await share_fn(room_id, ignore_unverified_devices=True)
            logger.debug("matrix.e2ee.session_shared", room_id=room_id)

        encrypted = olm.group_encrypt(room_id, {"type": event_type, "content": content})
        logger.debug(
            "matrix.e2ee.event_encrypted",
            room_id=room_id,
            event_type=event_type,
            encrypted_type=ENCRYPTED_EVENT,
        )
        return encrypted

    async def update_sync_data(
        self,
        to_device_messages: list[dict[str, Any]],
        one_time_key_counts: dict[str, int],
        unused_fallback_key_types: list[str],
        changed_device_lists: list[str],
        left_device_lists: list[str],
    ) -> None:
        olm = getattr(self._client, "olm", None)
        if olm is None:
            return

        if "signed_curve25519" in one_time_key_counts:
            olm.uploaded_key_count = one_time_key_counts["signed_curve25519"]

        if changed_device_lists:
            add_changed = getattr(olm, "add_changed_users", None)
            if add_changed is not None:
                add_changed(set(changed_device_lists))

        if to_device_messages:
            handle_fn = getattr(olm, "handle_to_device_event", None)
            for raw in to_device_messages:
                parsed = nio.ToDeviceEvent.parse_event(raw)
                if parsed is None or handle_fn is None:
                    continue
                try:
                    handle_fn(parsed)
                except Exception as exc:
                    logger.warning(
                        "matrix.e2ee.to_device_failed",
                        event_type=raw.get("type"),
                        sender=raw.get("sender"),
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )

        logger.debug(
            "matrix.e2ee.sync_data",
            to_device=len(to_device_messages),
            one_time_keys=one_time_key_counts.get("signed_curve25519"),
            fallback_keys=list(unused_fallback_key_types),
            changed=len(changed_device_lists),
            left=len(left_device_lists),
        )

    async def _request_room_key(self, event: Any) -> None:
        request_fn = getattr(self._client, "request_room_key", None)
        if request_fn is None:
            return
        try:
            await request_fn(event)
        except Exception as exc:
            logger.debug(
                "matrix.e2ee.key_request_failed",
                event_id=getattr(event, "event_id", None),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return
        logger.debug(
            "matrix.e2ee.key_requested",
            event_id=getattr(event, "event_id", None),
            sender=getattr(event, "sender", None),
        )

    async def close(self) -> None:
        close_fn = getattr(self._client, "close", None)
        if close_fn is not None:
            await close_fn()


def build_nio_crypto_client(
    homeserver_url: str,
    user_id: str,
    device_id: str,
    access_token: str,
    store_path: Path,
) -> NioCryptoClient:
    """Create a nio ``AsyncClient`` with an Olm store and wrap it."""
    store_path.mkdir(parents=True, exist_ok=True)
    config = nio.AsyncClientConfig(
        store_sync_tokens=False,
        encryption_enabled=True,
    )
    nio_client = nio.AsyncClient(
        homeserver_url,
        user_id,
        device_id=device_id,
        store_path=str(store_path),
        config=config,
    )
    nio_client.access_token = access_token
    nio_client.user_id = user_id
    nio_client.device_id = device_id

    load_store_fn = getattr(nio_client, "load_store", None)
    if load_store_fn is not None:
        load_store_fn()
        logger.debug("matrix.e2ee.store_loaded", store_path=str(store_path))
    return NioCryptoClient(nio_client)
