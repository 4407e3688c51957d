"""In-process typed event bus.

Components publish members of their own ``StrEnum`` event types (for example
``ConnectionEvent.CONNECTED`` or ``RegistryEvent.STATE_UPDATED``) and other
components subscribe with :meth:`EventBus.on`.

Handlers may be plain callables or coroutine functions.  Coroutine handlers
are scheduled as background tasks so that an emitter running inside the hub
message loop never waits on a handler that itself needs that loop.  Handler
failures are logged and never propagate back to the emitter.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Publish/subscribe dispatcher keyed by enum members."""

    def __init__(self) -> None:
        self._handlers: dict[enum.Enum, list[Handler]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def on(self, events: enum.Enum | Iterable[enum.Enum], handler: Handler) -> Callable[[], None]:
        """Subscribe *handler* to one or more events.

        Returns a callable that removes the subscription again.
        """
        kinds = [events] if isinstance(events, enum.Enum) else list(events)
        for kind in kinds:
            self._handlers.setdefault(kind, []).append(handler)

        def unsubscribe() -> None:
            for kind in kinds:
                handlers = self._handlers.get(kind, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def handler_count(self, event: enum.Enum) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: enum.Enum, payload: Any = None) -> None:
        """Dispatch *payload* to every handler subscribed to *event*."""
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
            except Exception:
                logger.exception("Event handler for %s failed", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._guard(event, result))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _guard(self, event: enum.Enum, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Async event handler for %s failed", event)

    async def wait_idle(self) -> None:
        """Wait until every scheduled handler task (including ones they spawn) finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding handler tasks and drop all subscriptions."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._handlers.clear()
