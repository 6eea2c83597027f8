"""Long-poll ``/sync`` driver with reconnection backoff."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

import anyio

from .errors import MatrixRetryAfter
from .logging import get_logger
from .storage import FilterDescriptor, StorageProvider
from .sync import SyncProcessor

if TYPE_CHECKING:
    from anyio.abc import TaskGroup
else:
    TaskGroup = object

logger = get_logger(__name__)

SYNC_ENDPOINT = "/_matrix/client/v3/sync"
# Extra seconds allowed on top of the server-side long-poll timeout
REQUEST_TIMEOUT_MARGIN = 10.0


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


class SyncClient(Protocol):
    syncing_presence: str | None
    syncing_timeout_ms: int

    async def get_user_id(self) -> str: ...

    async def get_joined_rooms(self) -> list[str]: ...

    async def create_filter(self, filter: dict[str, Any]) -> str: ...

    async def update_dms(self) -> None: ...

    async def do_request(
        self,
        method: str,
        endpoint: str,
        qs: dict[str, Any] | None = None,
        body: Any = None,
        timeout: float | None = None,
    ) -> Any: ...


class ExponentialBackoff:
    """Exponential backoff for reconnection."""

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 60.0,
        multiplier: float = 2.0,
    ) -> None:
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self.current = initial

    def next(self) -> float:
        delay = self.current
        self.current = min(self.current * self.multiplier, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.initial


class SyncLoop:
    """Drives repeated ``/sync`` calls and feeds each body to the processor.

    ``start`` does the one-off setup (joined rooms, DM cache, filter) in the
    caller's task and then polls from a background task. ``stop`` only asks
    the loop to finish; a poll already in flight is completed and processed
    first. ``wait_stopped`` returns once the loop is idle again.
    """

    def __init__(
        self,
        client: SyncClient,
        processor: SyncProcessor,
        storage: StorageProvider,
        *,
        backoff: ExponentialBackoff | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._client = client
        self._processor = processor
        self._storage = storage
        self._backoff = backoff or ExponentialBackoff()
        self._sleep = sleep
        self._state = SyncState.IDLE
        self._stop_requested = False
        self._stopped = anyio.Event()
        self._stopped.set()
        self._pause_scope: anyio.CancelScope | None = None
        self._tg: TaskGroup | None = None
        self._token: str | None = None
        self._filter_id: str | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def filter_id(self) -> str | None:
        return self._filter_id

    @property
    def sync_token(self) -> str | None:
        return self._token

    async def start(self, filter: Any = None) -> None:
        if self._state is not SyncState.IDLE:
            logger.warning("matrix.sync.already_running", state=self._state.value)
            return

        self._state = SyncState.RUNNING
        self._stop_requested = False
        self._stopped = anyio.Event()
        try:
            joined = await self._client.get_joined_rooms()
            self._processor.mark_joined(joined)
            await self._client.update_dms()
            self._filter_id = await self._resolve_filter(filter)
            self._token = self._storage.get_sync_token()
        except BaseException:
            self._finish()
            raise

        if self._stop_requested:
            logger.info("matrix.sync.stopped_before_start")
            self._finish()
            return

        logger.info(
            "matrix.sync.start",
            user_id=self._processor.user_id,
            joined_rooms=len(joined),
            filter_id=self._filter_id,
            has_token=self._token is not None,
        )
        self._tg = await anyio.create_task_group().__aenter__()
        self._tg.start_soon(self._run)

    def stop(self) -> None:
        if self._state is not SyncState.RUNNING:
            return
        self._stop_requested = True
        self._state = SyncState.STOPPING
        logger.info("matrix.sync.stopping")
        if self._pause_scope is not None:
            self._pause_scope.cancel()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()
        if self._tg is not None:
            tg, self._tg = self._tg, None
            await tg.__aexit__(None, None, None)

    async def _resolve_filter(self, filter: Any) -> str | None:
        if not isinstance(filter, dict):
            if filter is not None:
                logger.warning(
                    "matrix.sync.filter_ignored", filter_type=type(filter).__name__
                )
            return None

        stored = self._storage.get_filter()
        if stored is not None and stored.filter == filter:
            logger.debug("matrix.sync.filter_reused", filter_id=stored.id)
            return stored.id

        filter_id = await self._client.create_filter(filter)
        self._storage.set_filter(FilterDescriptor(id=filter_id, filter=filter))
        logger.debug("matrix.sync.filter_created", filter_id=filter_id)
        return filter_id

    def _finish(self) -> None:
        self._state = SyncState.IDLE
        self._stop_requested = False
        self._stopped.set()

    def _query(self) -> dict[str, Any]:
        qs: dict[str, Any] = {"timeout": self._client.syncing_timeout_ms}
        if self._token:
            qs["since"] = self._token
        if self._filter_id is not None:
            qs["filter"] = self._filter_id
        presence = self._client.syncing_presence
        if presence is not None:
            qs["presence"] = presence
        return qs

    async def poll_once(self) -> None:
        """Issue one ``/sync`` request and process the response."""
        timeout = self._client.syncing_timeout_ms / 1000.0 + REQUEST_TIMEOUT_MARGIN
        body = await self._client.do_request(
            "GET", SYNC_ENDPOINT, qs=self._query(), timeout=timeout
        )
        if not isinstance(body, dict):
            body = {}

        token = body.get("next_batch")
        if token:
            self._token = token
            self._storage.set_sync_token(token)
        self._backoff.reset()

        await self._processor.process_sync(body)

    async def _pause(self, delay: float) -> None:
        """Sleep between attempts; ``stop`` cuts the wait short."""
        if self._stop_requested:
            return
        with anyio.CancelScope() as scope:
            self._pause_scope = scope
            try:
                await self._sleep(delay)
            finally:
                self._pause_scope = None

    async def _run(self) -> None:
        try:
            while not self._stop_requested:
                try:
                    await self.poll_once()
                except MatrixRetryAfter as exc:
                    logger.warning("matrix.sync.rate_limited", retry_after=exc.retry_after)
                    await self._pause(exc.retry_after)
                except Exception as exc:
                    delay = self._backoff.next()
                    logger.error(
                        "matrix.sync.error",
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                        retry_in=delay,
                    )
                    await self._pause(delay)
        finally:
            logger.info("matrix.sync.stopped")
            self._finish()
