"""Event preprocessors run on room events before they reach consumers."""

from __future__ import annotations

import copy
import inspect
from typing import Any, Protocol, runtime_checkable

from .events import EventKind
from .logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Preprocessor(Protocol):
    """Annotates events of the types it supports.

    ``process_event`` mutates the given event in place and may be a
    coroutine function.
    """

    def get_supported_event_types(self) -> list[str]: ...

    def process_event(
        self, event: dict[str, Any], client: Any, kind: EventKind
    ) -> Any: ...


class PreprocessorChain:
    """Ordered registry of preprocessors; the first match for a type wins."""

    def __init__(self) -> None:
        self._preprocessors: list[Preprocessor] = []

    def __len__(self) -> int:
        return len(self._preprocessors)

    def add(self, preprocessor: Preprocessor) -> None:
        self._preprocessors.append(preprocessor)
        logger.debug(
            "matrix.preprocessor.registered",
            preprocessor=preprocessor.__class__.__name__,
            event_types=list(preprocessor.get_supported_event_types()),
        )

    def find(self, event_type: Any) -> Preprocessor | None:
        if not isinstance(event_type, str):
            return None
        for preprocessor in self._preprocessors:
            if event_type in preprocessor.get_supported_event_types():
                return preprocessor
        return None

    async def process(
        self,
        event: dict[str, Any],
        client: Any = None,
        kind: EventKind = EventKind.ROOM_EVENT,
    ) -> dict[str, Any]:
        """Return the event as consumers should see it.

        The matched preprocessor works on a deep copy so the payload it was
        read from (a sync body, a cached state list) is left untouched.
        Events without a matching preprocessor are returned as-is.
        """
        if not isinstance(event, dict):
            return event
        preprocessor = self.find(event.get("type"))
        if preprocessor is None:
            return event

        processed = copy.deepcopy(event)
        result = preprocessor.process_event(processed, client, kind)
        if inspect.isawaitable(result):
            await result
        return processed
