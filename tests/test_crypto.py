"""Tests for crypto.py - the nio-backed encryption collaborator."""

from __future__ import annotations

from typing import Any

import nio
import pytest

from matrix_sync.availability import NioAvailability, check_nio_availability
from matrix_sync.crypto import CryptoClient, NioCryptoClient, require_crypto
from matrix_sync.emitter import EventEmitter
from matrix_sync.errors import CryptoNotEnabledError, DecryptionError
from matrix_sync.events import EncryptedRoomEvent
from matrix_sync.preprocessors import PreprocessorChain
from matrix_sync.sync import SyncProcessor
from matrix_fixtures import OTHER_USER_ID, ROOM_ID, USER_ID, Recorder

AVAILABLE = NioAvailability(basic=True, e2ee=True, e2ee_check_mode="flag")
UNAVAILABLE = NioAvailability(basic=True, e2ee=False, e2ee_check_mode="flag")


class FakeRoom:
    def __init__(self, encrypted: bool) -> None:
        self.encrypted = encrypted


class FakeOlm:
    def __init__(self, should_share: bool = False) -> None:
        self.should_share = should_share
        self.uploaded_key_count: int | None = None
        self.changed_users: list[set[str]] = []
        self.to_device: list[Any] = []
        self.encrypt_calls: list[tuple[str, dict[str, Any]]] = []

    def should_share_group_session(self, room_id: str) -> bool:
        return self.should_share

    def group_encrypt(self, room_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.encrypt_calls.append((room_id, payload))
        return {"algorithm": "m.megolm.v1.aes-sha2", "ciphertext": "opaque"}

    def add_changed_users(self, users: set[str]) -> None:
        self.changed_users.append(users)

    def handle_to_device_event(self, event: Any) -> None:
        if event == "explode":
            raise RuntimeError("bad to-device payload")
        self.to_device.append(event)


class FakeNioClient:
    def __init__(self, olm: FakeOlm | None = None) -> None:
        self.olm = olm
        self.rooms: dict[str, FakeRoom] = {}
        self.shared: list[str] = []
        self.key_requests: list[Any] = []
        self.decrypt_result: Any = None
        self.closed = False

    async def share_group_session(
        self, room_id: str, ignore_unverified_devices: bool = False
    ) -> None:
        self.shared.append(room_id)

    def decrypt_event(self, event: Any) -> Any:
        if isinstance(self.decrypt_result, Exception):
            raise self.decrypt_result
        return self.decrypt_result

    async def request_room_key(self, event: Any) -> None:
        self.key_requests.append(event)

    async def close(self) -> None:
        self.closed = True


class FakeDecrypted:
    def __init__(self, source: dict[str, Any]) -> None:
        self.source = source


def _crypto(nio_client: FakeNioClient) -> NioCryptoClient:
    return NioCryptoClient(nio_client, _nio_availability=AVAILABLE)


def _encrypted_event() -> EncryptedRoomEvent:
    return EncryptedRoomEvent(
        raw={
            "type": "m.room.encrypted",
            "event_id": "$enc",
            "sender": OTHER_USER_ID,
            "origin_server_ts": 1,
            "content": {
                "algorithm": "m.megolm.v1.aes-sha2",
                "ciphertext": "opaque",
                "session_id": "session",
                "sender_key": "key",
                "device_id": "DEVICE",
            },
        }
    )


@pytest.fixture
def megolm_parse(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    parsed: list[dict[str, Any]] = []

    def parse_event(raw: dict[str, Any]) -> Any:
        parsed.append(raw)
        return object.__new__(nio.MegolmEvent)

    monkeypatch.setattr(nio.Event, "parse_event", parse_event)
    return parsed


# --- construction ---


def test_requires_e2ee_support() -> None:
    with pytest.raises(CryptoNotEnabledError):
        NioCryptoClient(FakeNioClient(), _nio_availability=UNAVAILABLE)


def test_satisfies_crypto_protocol() -> None:
    assert isinstance(_crypto(FakeNioClient()), CryptoClient)


# --- room encryption ---


@pytest.mark.anyio
async def test_is_room_encrypted_from_nio_rooms() -> None:
    nio_client = FakeNioClient()
    nio_client.rooms = {ROOM_ID: FakeRoom(True), "!plain:example.org": FakeRoom(False)}
    crypto = _crypto(nio_client)

    assert await crypto.is_room_encrypted(ROOM_ID)
    assert not await crypto.is_room_encrypted("!plain:example.org")
    assert not await crypto.is_room_encrypted("!unknown:example.org")


@pytest.mark.anyio
async def test_mark_room_encrypted() -> None:
    crypto = _crypto(FakeNioClient())
    crypto.mark_room_encrypted(ROOM_ID)

    assert await crypto.is_room_encrypted(ROOM_ID)


def _encryption_state(state_key: str = "") -> dict[str, Any]:
    return {
        "type": "m.room.encryption",
        "state_key": state_key,
        "event_id": "$encryption",
        "sender": OTHER_USER_ID,
        "content": {"algorithm": "m.megolm.v1.aes-sha2"},
    }


class FakeStateReader:
    def __init__(self, result: Any) -> None:
        self.result = result
        self.calls: list[tuple[str, str, str]] = []

    async def __call__(
        self, room_id: str, event_type: str, state_key: str
    ) -> dict[str, Any] | None:
        self.calls.append((room_id, event_type, state_key))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.mark.anyio
async def test_encryption_state_event_marks_room() -> None:
    crypto = _crypto(FakeNioClient())

    await crypto.on_room_event(ROOM_ID, {"type": "m.room.message", "content": {}})
    await crypto.on_room_event(ROOM_ID, _encryption_state(state_key="other"))
    assert not await crypto.is_room_encrypted(ROOM_ID)

    await crypto.on_room_event(ROOM_ID, _encryption_state())
    assert await crypto.is_room_encrypted(ROOM_ID)


@pytest.mark.anyio
async def test_encryption_looked_up_from_room_state() -> None:
    reader = FakeStateReader({"algorithm": "m.megolm.v1.aes-sha2"})
    crypto = NioCryptoClient(
        FakeNioClient(), read_state_event=reader, _nio_availability=AVAILABLE
    )

    assert await crypto.is_room_encrypted(ROOM_ID)
    assert await crypto.is_room_encrypted(ROOM_ID)
    assert reader.calls == [(ROOM_ID, "m.room.encryption", "")]


@pytest.mark.anyio
async def test_unencrypted_lookup_cached_until_state_arrives() -> None:
    reader = FakeStateReader(None)
    crypto = NioCryptoClient(
        FakeNioClient(), read_state_event=reader, _nio_availability=AVAILABLE
    )

    assert not await crypto.is_room_encrypted(ROOM_ID)
    assert not await crypto.is_room_encrypted(ROOM_ID)
    assert len(reader.calls) == 1

    await crypto.on_room_event(ROOM_ID, _encryption_state())
    assert await crypto.is_room_encrypted(ROOM_ID)


@pytest.mark.anyio
async def test_failed_lookup_is_retried() -> None:
    reader = FakeStateReader(RuntimeError("server down"))
    crypto = NioCryptoClient(
        FakeNioClient(), read_state_event=reader, _nio_availability=AVAILABLE
    )

    assert not await crypto.is_room_encrypted(ROOM_ID)
    assert not await crypto.is_room_encrypted(ROOM_ID)
    assert len(reader.calls) == 2


@pytest.mark.anyio
async def test_sync_timeline_enables_decryption(
    megolm_parse: list[dict[str, Any]],
) -> None:
    nio_client = FakeNioClient(FakeOlm())
    nio_client.decrypt_result = FakeDecrypted(
        {"type": "m.room.message", "event_id": "$enc", "content": {"body": "hi"}}
    )
    crypto = _crypto(nio_client)
    emitter = EventEmitter()
    recorder = Recorder(emitter)
    processor = SyncProcessor(USER_ID, emitter, PreprocessorChain(), crypto=crypto)

    await processor.process_sync(
        {
            "rooms": {
                "join": {
                    ROOM_ID: {
                        "timeline": {
                            "events": [_encryption_state(), _encrypted_event().raw]
                        }
                    }
                }
            }
        }
    )

    assert recorder.channels() == [
        "room.join",
        "room.event",
        "room.encrypted_event",
        "room.decrypted_event",
        "room.event",
        "room.message",
    ]
    assert recorder.on("room.message")[0][1]["content"] == {"body": "hi"}
    assert await crypto.is_room_encrypted(ROOM_ID)


# --- encryption ---


@pytest.mark.anyio
async def test_encrypt_shares_session_when_needed() -> None:
    olm = FakeOlm(should_share=True)
    nio_client = FakeNioClient(olm)
    crypto = _crypto(nio_client)

    content = await crypto.encrypt_room_event(ROOM_ID, "m.room.message", {"body": "hi"})

    assert content["ciphertext"] == "opaque"
    assert nio_client.shared == [ROOM_ID]
    assert olm.encrypt_calls == [
        (ROOM_ID, {"type": "m.room.message", "content": {"body": "hi"}})
    ]


@pytest.mark.anyio
async def test_encrypt_skips_sharing_for_existing_session() -> None:
    nio_client = FakeNioClient(FakeOlm(should_share=False))
    crypto = _crypto(nio_client)

    await crypto.encrypt_room_event(ROOM_ID, "m.room.message", {"body": "hi"})

    assert nio_client.shared == []


@pytest.mark.anyio
async def test_encrypt_without_olm_machine() -> None:
    crypto = _crypto(FakeNioClient(olm=None))

    with pytest.raises(CryptoNotEnabledError):
        await crypto.encrypt_room_event(ROOM_ID, "m.room.message", {})


# --- decryption ---


@pytest.mark.anyio
async def test_decrypt_returns_plaintext_event(megolm_parse: list[dict[str, Any]]) -> None:
    nio_client = FakeNioClient()
    nio_client.decrypt_result = FakeDecrypted(
        {"type": "m.room.message", "event_id": "$enc", "content": {"body": "hi"}}
    )
    crypto = _crypto(nio_client)

    decrypted = await crypto.decrypt_room_event(_encrypted_event(), ROOM_ID)

    assert decrypted.type == "m.room.message"
    assert decrypted.content == {"body": "hi"}
    assert megolm_parse[0]["room_id"] == ROOM_ID
    assert nio_client.key_requests == []


@pytest.mark.anyio
async def test_decrypt_failure_requests_room_key(
    megolm_parse: list[dict[str, Any]],
) -> None:
    nio_client = FakeNioClient()
    nio_client.decrypt_result = RuntimeError("unknown session")
    crypto = _crypto(nio_client)

    with pytest.raises(DecryptionError) as exc_info:
        await crypto.decrypt_room_event(_encrypted_event(), ROOM_ID)

    assert exc_info.value.event_id == "$enc"
    assert "unknown session" in str(exc_info.value)
    assert len(nio_client.key_requests) == 1


@pytest.mark.anyio
async def test_decrypt_rejects_non_megolm(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(nio.Event, "parse_event", lambda raw: object())
    crypto = _crypto(FakeNioClient())

    with pytest.raises(DecryptionError, match="not a megolm event"):
        await crypto.decrypt_room_event(_encrypted_event(), ROOM_ID)


# --- sync data ---


@pytest.mark.anyio
async def test_update_sync_data_feeds_olm(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        nio.ToDeviceEvent, "parse_event", lambda raw: raw.get("marker")
    )
    olm = FakeOlm()
    crypto = _crypto(FakeNioClient(olm))

    await crypto.update_sync_data(
        [{"marker": "first"}, {"marker": "explode"}, {"marker": None}, {"marker": "last"}],
        {"signed_curve25519": 7},
        ["signed_curve25519"],
        [OTHER_USER_ID],
        [],
    )

    assert olm.uploaded_key_count == 7
    assert olm.changed_users == [{OTHER_USER_ID}]
    assert olm.to_device == ["first", "last"]


@pytest.mark.anyio
async def test_update_sync_data_without_olm_is_noop() -> None:
    crypto = _crypto(FakeNioClient(olm=None))

    await crypto.update_sync_data([], {"signed_curve25519": 7}, [], [OTHER_USER_ID], [])


@pytest.mark.anyio
async def test_close_closes_nio_client() -> None:
    nio_client = FakeNioClient()
    await _crypto(nio_client).close()

    assert nio_client.closed


# --- require_crypto ---


class _Owner:
    def __init__(self, crypto: Any) -> None:
        self.crypto = crypto

    @require_crypto
    async def needs_crypto(self, value: int) -> int:
        return value * 2


@pytest.mark.anyio
async def test_require_crypto_allows_call() -> None:
    assert await _Owner(object()).needs_crypto(21) == 42


@pytest.mark.anyio
async def test_require_crypto_rejects_call() -> None:
    with pytest.raises(CryptoNotEnabledError) as exc_info:
        await _Owner(None).needs_crypto(21)

    assert exc_info.value.operation == "needs_crypto"


# --- availability ---


def test_missing_reason() -> None:
    assert AVAILABLE.missing_reason is None
    assert "libolm" in (UNAVAILABLE.missing_reason or "")
    missing = NioAvailability(basic=False, e2ee=False, e2ee_check_mode="unchecked")
    assert missing.missing_reason == "matrix-nio is not installed"


def test_availability_check_is_cached() -> None:
    first = check_nio_availability()
    assert first is check_nio_availability()
    assert first.basic
    assert first.e2ee_check_mode == "flag"
