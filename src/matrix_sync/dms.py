"""Direct-message room tracking from ``m.direct`` account data."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from .errors import MatrixRequestError
from .events import DIRECT_ACCOUNT_DATA
from .logging import get_logger

logger = get_logger(__name__)

AccountDataReader = Callable[[str], Awaitable[dict[str, Any]]]


class DirectMessages:
    """Cache of which rooms are DMs, keyed by the other user's id."""

    def __init__(self, read_account_data: AccountDataReader) -> None:
        self._read_account_data = read_account_data
        self._by_user: dict[str, list[str]] = {}
        self._rooms: set[str] = set()

    async def update(self) -> None:
        """Refresh the cache from the server. Missing account data means no DMs."""
        try:
            content = await self._read_account_data(DIRECT_ACCOUNT_DATA)
        except MatrixRequestError as exc:
            if exc.status_code != 404 and exc.errcode != "M_NOT_FOUND":
                raise
            content = {}
        self._load(content)
        logger.debug(
            "matrix.dms.updated", users=len(self._by_user), rooms=len(self._rooms)
        )

    def handle_account_data(self, event: dict[str, Any]) -> None:
        """Apply an ``m.direct`` event delivered through sync."""
        if not isinstance(event, dict) or event.get("type") != DIRECT_ACCOUNT_DATA:
            return
        self._load(event.get("content"))

    def _load(self, content: Any) -> None:
        by_user: dict[str, list[str]] = {}
        if isinstance(content, dict):
            for user_id, room_ids in content.items():
                if not isinstance(room_ids, list):
                    continue
                by_user[user_id] = [r for r in room_ids if isinstance(r, str)]
        self._by_user = by_user
        self._rooms = {room_id for rooms in by_user.values() for room_id in rooms}

    def is_dm(self, room_id: str) -> bool:
        return room_id in self._rooms

    def dm_rooms_for(self, user_id: str) -> list[str]:
        return list(self._by_user.get(user_id, ()))

    @property
    def known_users(self) -> list[str]:
        return list(self._by_user)
