"""Named-channel event emitter used to publish sync notifications."""

from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Callable


Handler = Callable[..., Any]


class EventEmitter:
    """Dispatch notifications to handlers registered per channel.

    Handlers run in registration order. Coroutine handlers are awaited
    before the next handler runs, so one ``emit`` call fully completes
    before the caller continues.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, channel: str, handler: Handler) -> Handler:
        self._handlers[channel].append(handler)
        return handler

    def once(self, channel: str, handler: Handler) -> Handler:
        def wrapper(*args: Any) -> Any:
            self.off(channel, wrapper)
            return handler(*args)

        return self.on(channel, wrapper)

    def off(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers.get(channel)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return

    def listener_count(self, channel: str) -> int:
        return len(self._handlers.get(channel, ()))

    async def emit(self, channel: str, *args: Any) -> None:
        handlers = list(self._handlers.get(channel, ()))
        if not handlers:
            return
        for handler in handlers:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
