"""
In-process realtime change bus.

Services publish row changes (INSERT / UPDATE / DELETE on a table) after the
database transaction commits. Subscribers register a named channel with one
or more filters and receive every matching change. A channel name may be
registered only once at a time.
"""
import datetime
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from app.core.database import utcnow
from app.core.exceptions import AlreadySubscribedError

logger = logging.getLogger(__name__)

EVENT_TYPES = {"INSERT", "UPDATE", "DELETE", "*"}
FILTER_OPERATORS = {"eq", "neq"}


@dataclass
class ChangeEvent:
    table: str
    event_type: str
    new: Dict[str, Any] = field(default_factory=dict)
    old: Optional[Dict[str, Any]] = None
    commit_timestamp: datetime.datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EventFilter:
    """
    ``table`` + ``event`` + optional row filter.

    The row filter has the form ``column=op.value`` with ``op`` one of
    ``eq`` / ``neq``, e.g. ``sender_id=neq.42``. Values compare as strings.
    """
    table: str
    event: str = "*"
    filter: Optional[str] = None

    def __post_init__(self):
        if self.event not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {self.event}")
        if self.filter is not None:
            self.parse_filter(self.filter)

    @staticmethod
    def parse_filter(expression: str) -> Tuple[str, str, str]:
        column, sep, rest = expression.partition("=")
        operator, dot, value = rest.partition(".")
        if not sep or not dot or not column or operator not in FILTER_OPERATORS:
            raise ValueError(f"Invalid filter expression: {expression}")
        return column, operator, value

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.event != "*" and change.event_type != self.event:
            return False
        if self.filter is None:
            return True
        column, operator, value = self.parse_filter(self.filter)
        actual = (change.new or {}).get(column)
        actual = "" if actual is None else str(actual)
        if operator == "eq":
            return actual == value
        return actual != value


ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


@dataclass
class _Channel:
    name: str
    filters: Tuple[EventFilter, ...]
    callback: ChangeCallback


class RealtimeBus:
    def __init__(self):
        self._channels: Dict[str, _Channel] = {}

    @property
    def channel_names(self) -> List[str]:
        return list(self._channels.keys())

    def is_subscribed(self, channel_name: str) -> bool:
        return channel_name in self._channels

    async def subscribe(self, channel_name: str, filters: Iterable[EventFilter], callback: ChangeCallback) -> None:
        if channel_name in self._channels:
            raise AlreadySubscribedError(f"Channel '{channel_name}' is already subscribed")
        self._channels[channel_name] = _Channel(channel_name, tuple(filters), callback)
        logger.debug(f"[RealtimeBus] Subscribed channel '{channel_name}'. Active channels: {len(self._channels)}")

    async def unsubscribe(self, channel_name: str) -> bool:
        removed = self._channels.pop(channel_name, None) is not None
        if removed:
            logger.debug(f"[RealtimeBus] Unsubscribed channel '{channel_name}'. Active channels: {len(self._channels)}")
        return removed

    async def publish(self, change: ChangeEvent) -> int:
        """Deliver ``change`` to every matching channel; returns the number of deliveries."""
        delivered = 0
        for channel in list(self._channels.values()):
            if not any(f.matches(change) for f in channel.filters):
                continue
            delivered += 1
            try:
                result = channel.callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A failing subscriber never blocks the publisher or other channels
                logger.error(f"[RealtimeBus] Callback for channel '{channel.name}' failed on {change.table} {change.event_type}: {e}")
        return delivered

    async def close(self):
        self._channels.clear()
