"""Minimal async observer used to wire components together."""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventEmitter:
    """
    Named-event publisher.

    Subscribers may be plain functions or coroutines. A failing subscriber
    is logged and never interrupts delivery to the others.
    """

    def __init__(self) -> None:
        self._event_callbacks: dict[str, list[Callable]] = defaultdict(list)

    def on(self, event: str, callback: Callable) -> Callable:
        """Register callback for event. Returns the callback."""
        self._event_callbacks[event].append(callback)
        return callback

    def off(self, event: str, callback: Callable) -> None:
        callbacks = self._event_callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def listeners(self, event: str) -> list[Callable]:
        return list(self._event_callbacks.get(event, []))

    async def emit(self, event: str, *args: Any) -> None:
        """Deliver an event to every subscriber, awaiting coroutine ones."""
        for cb in self.listeners(event):
            try:
                result = cb(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Event callback error ({event}): {e}", exc_info=True)
