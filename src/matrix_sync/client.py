"""HTTP client for the homeserver, wiring the sync engine together."""

from __future__ import annotations

import itertools
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import anyio
import httpx

from .config import MatrixSyncSettings
from .crypto import (
    CryptoClient,
    NioCryptoClient,
    build_nio_crypto_client,
    require_crypto,
)
from .dms import DirectMessages
from .emitter import EventEmitter, Handler
from .errors import (
    ConfigError,
    InvalidRoomReferenceError,
    MatrixRequestError,
    MatrixRetryAfter,
    parse_matrix_error,
)
from .events import (
    ACCOUNT_DATA,
    ENCRYPTED_EVENT,
    POWER_LEVELS_EVENT,
    EncryptedRoomEvent,
    EventKind,
    is_room_alias,
    is_room_id,
)
from .logging import get_logger
from .power_levels import PowerLevelAction, PowerLevelBounds, PowerLevelEvaluator
from .preprocessors import Preprocessor, PreprocessorChain
from .storage import JsonFileStorageProvider, MemoryStorageProvider, StorageProvider
from .sync import SyncProcessor
from .sync_loop import ExponentialBackoff, SyncLoop
from .upgrades import RoomUpgradeHistory, get_room_upgrade_history

logger = get_logger(__name__)

CLIENT_API = "/_matrix/client/v3"
DEFAULT_RETRY_AFTER = 5.0


def _path(value: str) -> str:
    return quote(value, safe="")


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


@dataclass(frozen=True, slots=True)
class RoomAliasLookup:
    room_id: str
    servers: list[str] = field(default_factory=list)


class MatrixClient:
    """Client-server API access plus the sync engine for one account."""

    def __init__(
        self,
        homeserver_url: str,
        access_token: str,
        *,
        storage: StorageProvider | None = None,
        crypto: CryptoClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        user_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        backoff: ExponentialBackoff | None = None,
    ) -> None:
        self.homeserver_url = homeserver_url.rstrip("/")
        self.access_token = access_token
        self.storage = storage or MemoryStorageProvider()
        self.crypto = crypto
        self._http_client = http_client or httpx.AsyncClient(timeout=120)
        self._owns_http_client = http_client is None
        self._user_id = user_id
        self._sleep = sleep
        self._backoff = backoff
        self._txn_ids = itertools.count()
        self._txn_prefix = str(int(time.time() * 1000))

        self.syncing_presence: str | None = None
        self.syncing_timeout_ms = 30000

        self.emitter = EventEmitter()
        self.preprocessors = PreprocessorChain()
        self.dms = DirectMessages(self.get_account_data)
        self.emitter.on(ACCOUNT_DATA, self.dms.handle_account_data)
        self._power_levels = PowerLevelEvaluator(self._read_optional_state_event)
        if isinstance(crypto, NioCryptoClient) and crypto.read_state_event is None:
            crypto.read_state_event = self._read_optional_state_event

        self._processor: SyncProcessor | None = None
        self._sync_loop: SyncLoop | None = None

    @classmethod
    def from_settings(
        cls,
        settings: MatrixSyncSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> MatrixClient:
        storage: StorageProvider | None = None
        if settings.storage_path is not None:
            if not settings.user_id:
                raise ConfigError("user_id is required when storage_path is set")
            storage = JsonFileStorageProvider(settings.storage_path, settings.user_id)

        crypto: CryptoClient | None = None
        if settings.enable_encryption:
            if not settings.user_id or not settings.device_id:
                raise ConfigError("user_id and device_id are required for encryption")
            if settings.crypto_store_path is None:
                raise ConfigError("crypto_store_path is required for encryption")
            crypto = build_nio_crypto_client(
                settings.homeserver_url,
                settings.user_id,
                settings.device_id,
                settings.access_token,
                settings.crypto_store_path,
            )

        client = cls(
            settings.homeserver_url,
            settings.access_token,
            storage=storage,
            crypto=crypto,
            http_client=http_client,
            user_id=settings.user_id,
            backoff=ExponentialBackoff(
                initial=settings.backoff_initial,
                maximum=settings.backoff_maximum,
            ),
        )
        client.syncing_timeout_ms = settings.sync_timeout_ms
        client.syncing_presence = settings.sync_presence
        return client

    # --- transport ---

    async def do_request(
        self,
        method: str,
        endpoint: str,
        qs: dict[str, Any] | None = None,
        body: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Perform an authenticated request and return the decoded JSON body."""
        params = {
            key: _query_value(value) for key, value in (qs or {}).items() if value is not None
        }
        headers = {"Authorization": f"Bearer {self.access_token}"}
        kwargs: dict[str, Any] = {"params": params, "headers": headers}
        if body is not None:
            kwargs["json"] = body
        if timeout is not None:
            kwargs["timeout"] = timeout

        response = await self._http_client.request(
            method, f"{self.homeserver_url}{endpoint}", **kwargs
        )
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if response.is_success:
            return data

        errcode, retry_after = parse_matrix_error(data if isinstance(data, dict) else {})
        error = data.get("error") if isinstance(data, dict) else None
        if response.status_code == 429 or errcode == "M_LIMIT_EXCEEDED":
            raise MatrixRetryAfter(retry_after or DEFAULT_RETRY_AFTER, error)
        logger.debug(
            "matrix.request.failed",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            errcode=errcode or None,
        )
        raise MatrixRequestError(
            response.status_code, errcode=errcode or None, error=error, body=data
        )

    def _next_txn_id(self) -> str:
        return f"{self._txn_prefix}.{next(self._txn_ids)}"

    async def close(self) -> None:
        """Stop syncing and release the HTTP and crypto resources."""
        if self._sync_loop is not None:
            self._sync_loop.stop()
            await self._sync_loop.wait_stopped()
        close_fn = getattr(self.crypto, "close", None)
        if close_fn is not None:
            await close_fn()
        if self._owns_http_client:
            await self._http_client.aclose()

    # --- account ---

    async def get_user_id(self) -> str:
        if self._user_id is None:
            data = await self.do_request("GET", f"{CLIENT_API}/account/whoami")
            self._user_id = data["user_id"]
        return self._user_id

    async def get_joined_rooms(self) -> list[str]:
        data = await self.do_request("GET", f"{CLIENT_API}/joined_rooms")
        rooms = data.get("joined_rooms") if isinstance(data, dict) else None
        return list(rooms or [])

    async def get_account_data(self, event_type: str) -> dict[str, Any]:
        user_id = await self.get_user_id()
        return await self.do_request(
            "GET",
            f"{CLIENT_API}/user/{_path(user_id)}/account_data/{_path(event_type)}",
        )

    async def get_room_account_data(
        self, room_id: str, event_type: str
    ) -> dict[str, Any]:
        user_id = await self.get_user_id()
        return await self.do_request(
            "GET",
            f"{CLIENT_API}/user/{_path(user_id)}/rooms/{_path(room_id)}"
            f"/account_data/{_path(event_type)}",
        )

    async def create_filter(self, filter: dict[str, Any]) -> str:
        user_id = await self.get_user_id()
        data = await self.do_request(
            "POST", f"{CLIENT_API}/user/{_path(user_id)}/filter", body=filter
        )
        return str(data["filter_id"])

    @require_crypto
    async def check_one_time_key_counts(self) -> dict[str, int]:
        """Ask the server how many one-time keys this device has uploaded."""
        data = await self.do_request("POST", f"{CLIENT_API}/keys/upload", body={})
        counts = data.get("one_time_key_counts") if isinstance(data, dict) else None
        return dict(counts or {})

    async def update_dms(self) -> None:
        await self.dms.update()

    # --- rooms ---

    async def get_room_state(self, room_id: str) -> list[dict[str, Any]]:
        events = await self.do_request(
            "GET", f"{CLIENT_API}/rooms/{_path(room_id)}/state"
        )
        return [await self.process_event(event) for event in events or []]

    async def get_room_state_event(
        self, room_id: str, event_type: str, state_key: str = ""
    ) -> dict[str, Any]:
        """Content of one state event; raises MatrixRequestError when absent."""
        return await self.do_request(
            "GET",
            f"{CLIENT_API}/rooms/{_path(room_id)}/state/{_path(event_type)}"
            f"/{_path(state_key)}",
        )

    async def _read_optional_state_event(
        self, room_id: str, event_type: str, state_key: str = ""
    ) -> dict[str, Any] | None:
        try:
            return await self.get_room_state_event(room_id, event_type, state_key)
        except MatrixRequestError as exc:
            if exc.status_code == 404 or exc.errcode == "M_NOT_FOUND":
                return None
            raise

    async def get_raw_event(self, room_id: str, event_id: str) -> dict[str, Any]:
        """Fetch an event and preprocess it, without decrypting."""
        event = await self.do_request(
            "GET", f"{CLIENT_API}/rooms/{_path(room_id)}/event/{_path(event_id)}"
        )
        return await self.process_event(event)

    async def get_event(self, room_id: str, event_id: str) -> dict[str, Any]:
        """Fetch an event, decrypting it when the room is encrypted."""
        event = await self.get_raw_event(room_id, event_id)
        if event.get("type") != ENCRYPTED_EVENT or self.crypto is None:
            return event
        if not await self.crypto.is_room_encrypted(room_id):
            return event
        decrypted = await self.crypto.decrypt_room_event(
            EncryptedRoomEvent(raw=event), room_id
        )
        return await self.process_event(decrypted.raw)

    async def send_event(
        self, room_id: str, event_type: str, content: dict[str, Any]
    ) -> str:
        if self.crypto is not None and await self.crypto.is_room_encrypted(room_id):
            content = await self.crypto.encrypt_room_event(room_id, event_type, content)
            event_type = ENCRYPTED_EVENT
        data = await self.do_request(
            "PUT",
            f"{CLIENT_API}/rooms/{_path(room_id)}/send/{_path(event_type)}"
            f"/{_path(self._next_txn_id())}",
            body=content,
        )
        return data["event_id"]

    async def send_message(self, room_id: str, content: dict[str, Any]) -> str:
        return await self.send_event(room_id, "m.room.message", content)

    async def send_state_event(
        self,
        room_id: str,
        event_type: str,
        state_key: str,
        content: dict[str, Any],
    ) -> str:
        data = await self.do_request(
            "PUT",
            f"{CLIENT_API}/rooms/{_path(room_id)}/state/{_path(event_type)}"
            f"/{_path(state_key)}",
            body=content,
        )
        return data["event_id"]

    async def lookup_room_alias(self, alias: str) -> RoomAliasLookup:
        data = await self.do_request(
            "GET", f"{CLIENT_API}/directory/room/{_path(alias)}"
        )
        return RoomAliasLookup(
            room_id=data["room_id"], servers=list(data.get("servers") or [])
        )

    async def resolve_room(self, room_id_or_alias: str) -> str:
        if is_room_id(room_id_or_alias):
            return room_id_or_alias
        if is_room_alias(room_id_or_alias):
            return (await self.lookup_room_alias(room_id_or_alias)).room_id
        raise InvalidRoomReferenceError(room_id_or_alias)

    async def get_room_upgrade_history(self, room_id: str) -> RoomUpgradeHistory:
        return await get_room_upgrade_history(self, room_id)

    # --- power levels ---

    async def user_has_power_level_for(
        self, user_id: str, room_id: str, event_type: str, is_state: bool
    ) -> bool:
        return await self._power_levels.user_has_power_level_for(
            user_id, room_id, event_type, is_state
        )

    async def user_has_power_level_for_action(
        self, user_id: str, room_id: str, action: PowerLevelAction | str
    ) -> bool:
        return await self._power_levels.user_has_power_level_for_action(
            user_id, room_id, action
        )

    async def calculate_power_level_change_bounds_on(
        self, target_user_id: str, room_id: str
    ) -> PowerLevelBounds:
        my_user_id = await self.get_user_id()
        return await self._power_levels.calculate_power_level_change_bounds_on(
            my_user_id, target_user_id, room_id
        )

    async def set_user_power_level(
        self, user_id: str, room_id: str, level: int
    ) -> str:
        content = await self.get_room_state_event(room_id, POWER_LEVELS_EVENT, "")
        users = dict(content.get("users") or {})
        users[user_id] = level
        return await self.send_state_event(
            room_id, POWER_LEVELS_EVENT, "", {**content, "users": users}
        )

    # --- sync ---

    def add_preprocessor(self, preprocessor: Preprocessor) -> None:
        self.preprocessors.add(preprocessor)

    async def process_event(
        self, event: dict[str, Any], kind: EventKind = EventKind.ROOM_EVENT
    ) -> dict[str, Any]:
        return await self.preprocessors.process(event, self, kind)

    def on(self, channel: str, handler: Handler) -> Handler:
        return self.emitter.on(channel, handler)

    async def _ensure_sync_loop(self) -> SyncLoop:
        if self._sync_loop is None:
            user_id = await self.get_user_id()
            self._processor = SyncProcessor(
                user_id,
                self.emitter,
                self.preprocessors,
                crypto=self.crypto,
                client=self,
            )
            self._sync_loop = SyncLoop(
                self,
                self._processor,
                self.storage,
                backoff=self._backoff,
                sleep=self._sleep,
            )
        return self._sync_loop

    async def process_sync(self, body: dict[str, Any]) -> None:
        """Feed one sync response body through the processor."""
        await self._ensure_sync_loop()
        assert self._processor is not None
        await self._processor.process_sync(body)

    async def start(self, filter: Any = None) -> None:
        loop = await self._ensure_sync_loop()
        await loop.start(filter)

    def stop(self) -> None:
        if self._sync_loop is not None:
            self._sync_loop.stop()

    async def wait_stopped(self) -> None:
        if self._sync_loop is not None:
            await self._sync_loop.wait_stopped()

    @property
    def joined_room_ids(self) -> frozenset[str]:
        if self._processor is None:
            return frozenset()
        return self._processor.joined_room_ids
