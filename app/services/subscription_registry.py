"""
Reference-counted realtime subscriptions.

A key ``(feature, entity_id)`` maps to exactly one transport channel named
``"{feature}-{entity_id}"``. Every holder of the key registers a handler; the
first ``acquire`` opens the channel, the last ``release`` tears it down, and
each change is fanned out to all registered handlers.

The key is added and removed synchronously, before any await, so a fast
release/acquire sequence for the same key neither opens a second channel nor
leaves the key without one.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from app.core.exceptions import AlreadySubscribedError
from app.services.realtime_bus import ChangeEvent, EventFilter

logger = logging.getLogger(__name__)

SubscriptionKey = Tuple[str, Hashable]


def channel_name_for(key: SubscriptionKey) -> str:
    feature, entity_id = key
    return f"{feature}-{entity_id}"


class _Entry:
    def __init__(self, key: SubscriptionKey, filters: Tuple[EventFilter, ...]):
        self.key = key
        self.channel_name = channel_name_for(key)
        self.filters = filters
        self.handlers: Dict[Callable, int] = {}
        self.subscribed = False
        self.setup: Optional[asyncio.Future] = None


class SubscriptionRegistry:
    def __init__(self, transport):
        """``transport`` provides ``subscribe(name, filters, callback)`` and ``unsubscribe(name)``."""
        self._transport = transport
        self._entries: Dict[SubscriptionKey, _Entry] = {}
        self._teardowns: Dict[SubscriptionKey, asyncio.Future] = {}

    def is_active(self, key: SubscriptionKey) -> bool:
        return key in self._entries

    def handler_count(self, key: SubscriptionKey) -> int:
        entry = self._entries.get(key)
        return sum(entry.handlers.values()) if entry else 0

    @property
    def active_keys(self) -> List[SubscriptionKey]:
        return list(self._entries.keys())

    async def acquire(self, key: SubscriptionKey, filters: Iterable[EventFilter], handler: Callable[[ChangeEvent], Any]) -> bool:
        """
        Register ``handler`` for ``key``. Returns True when this call opened
        the underlying channel.
        """
        entry = self._entries.get(key)
        if entry is not None:
            entry.handlers[handler] = entry.handlers.get(handler, 0) + 1
            if entry.setup is not None:
                await asyncio.shield(entry.setup)
            return False

        entry = _Entry(key, tuple(filters))
        entry.handlers[handler] = 1
        self._entries[key] = entry
        # Captured now: a later teardown of this same entry must not be awaited by its own setup
        previous_teardown = self._teardowns.get(key)
        entry.setup = asyncio.ensure_future(self._setup(entry, previous_teardown))
        return await asyncio.shield(entry.setup)

    async def _setup(self, entry: _Entry, previous_teardown: Optional[asyncio.Future]) -> bool:
        if previous_teardown is not None:
            await previous_teardown
        try:
            await self._transport.subscribe(entry.channel_name, entry.filters, self._dispatcher(entry))
        except AlreadySubscribedError:
            # Expected on fast remounts; the existing channel keeps serving the key
            logger.warning(f"[SubscriptionRegistry] Channel '{entry.channel_name}' already subscribed, keeping it")
            return False
        except Exception as e:
            logger.error(f"[SubscriptionRegistry] Failed to subscribe '{entry.channel_name}': {e}")
            if self._entries.get(entry.key) is entry:
                del self._entries[entry.key]
            return False
        entry.subscribed = True
        logger.debug(f"[SubscriptionRegistry] Subscribed '{entry.channel_name}'")
        return True

    async def release(self, key: SubscriptionKey, handler: Callable[[ChangeEvent], Any]) -> None:
        entry = self._entries.get(key)
        if entry is None or handler not in entry.handlers:
            return
        entry.handlers[handler] -= 1
        if entry.handlers[handler] <= 0:
            del entry.handlers[handler]
        if entry.handlers:
            return

        del self._entries[key]
        teardown = asyncio.ensure_future(self._teardown(entry))
        self._teardowns[key] = teardown

        def _forget(future, key=key):
            if self._teardowns.get(key) is future:
                del self._teardowns[key]

        teardown.add_done_callback(_forget)
        await asyncio.shield(teardown)

    async def _teardown(self, entry: _Entry):
        if entry.setup is not None:
            await entry.setup
        if not entry.subscribed:
            return
        try:
            await self._transport.unsubscribe(entry.channel_name)
            logger.debug(f"[SubscriptionRegistry] Unsubscribed '{entry.channel_name}'")
        except Exception as e:
            logger.error(f"[SubscriptionRegistry] Failed to unsubscribe '{entry.channel_name}': {e}")
        entry.subscribed = False

    def _dispatcher(self, entry: _Entry):
        async def dispatch(change: ChangeEvent):
            for handler in list(entry.handlers):
                try:
                    result = handler(change)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"[SubscriptionRegistry] Handler on '{entry.channel_name}' failed: {e}")
        return dispatch

    async def close(self):
        for key in list(self._entries.keys()):
            entry = self._entries[key]
            for handler in list(entry.handlers):
                entry.handlers[handler] = 1
                await self.release(key, handler)
