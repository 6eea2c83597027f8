"""Persistence for the sync token and the server-side filter."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class FilterDescriptor:
    """A filter registered on the homeserver and the body it was created from."""

    id: str
    filter: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "filter": self.filter}

    @classmethod
    def from_dict(cls, data: Any) -> FilterDescriptor | None:
        if not isinstance(data, dict):
            return None
        filter_id = data.get("id")
        body = data.get("filter")
        if filter_id is None or not isinstance(body, dict):
            return None
        return cls(id=str(filter_id), filter=body)


class StorageProvider(Protocol):
    def get_sync_token(self) -> str | None: ...

    def set_sync_token(self, token: str | None) -> None: ...

    def get_filter(self) -> FilterDescriptor | None: ...

    def set_filter(self, descriptor: FilterDescriptor) -> None: ...


class MemoryStorageProvider:
    def __init__(self) -> None:
        self._sync_token: str | None = None
        self._filter: FilterDescriptor | None = None

    def get_sync_token(self) -> str | None:
        return self._sync_token

    def set_sync_token(self, token: str | None) -> None:
        self._sync_token = token

    def get_filter(self) -> FilterDescriptor | None:
        return self._filter

    def set_filter(self, descriptor: FilterDescriptor) -> None:
        self._filter = descriptor


class JsonFileStorageProvider:
    """Stores the sync token and filter in one JSON file.

    The file records the user id it belongs to; data written for a
    different account is ignored. Read and write failures are logged and
    never raised, so a broken store only costs an initial sync.
    """

    def __init__(self, path: Path | str, user_id: str) -> None:
        self.path = Path(path).expanduser()
        self.user_id = user_id

    def _load(self) -> dict[str, Any]:
        try:
            if self.path.exists():
                data = json.loads(self.path.read_text())
                if isinstance(data, dict) and data.get("user_id") == self.user_id:
                    return data
        except Exception as exc:
            logger.warning(
                "matrix.storage.load_failed",
                path=str(self.path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
        return {}

    def _update(self, **values: Any) -> None:
        data = self._load()
        data.update(values)
        data["user_id"] = self.user_id
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data))
        except Exception as exc:
            logger.warning(
                "matrix.storage.save_failed",
                path=str(self.path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    def get_sync_token(self) -> str | None:
        token = self._load().get("next_batch")
        if token:
            logger.debug("matrix.sync.token_loaded", user_id=self.user_id)
            return str(token)
        return None

    def set_sync_token(self, token: str | None) -> None:
        self._update(next_batch=token)

    def get_filter(self) -> FilterDescriptor | None:
        return FilterDescriptor.from_dict(self._load().get("filter"))

    def set_filter(self, descriptor: FilterDescriptor) -> None:
        self._update(filter=descriptor.to_dict())
