import logging
from typing import List

from app.services.realtime_bus import ChangeEvent, EventFilter
from app.services.subscription_registry import SubscriptionRegistry
from app.services.unread_tracker import UnreadTracker

logger = logging.getLogger(__name__)

UNREAD_FEATURE = "unread-messages"


class UnreadRealtimeSync:
    """
    Feeds realtime changes into an ``UnreadTracker``.

    Listens for messages inserted or soft-deleted by anyone but the user and
    for updates to the user's own participant rows. Several syncs for the
    same user share one channel through the registry.
    """

    def __init__(self, registry: SubscriptionRegistry, tracker: UnreadTracker):
        self._registry = registry
        self._tracker = tracker
        self.key = (UNREAD_FEATURE, tracker.user_id)
        self._started = False

    @property
    def tracker(self) -> UnreadTracker:
        return self._tracker

    def filters(self) -> List[EventFilter]:
        user_id = self._tracker.user_id
        return [
            EventFilter(table="messages", event="INSERT", filter=f"sender_id=neq.{user_id}"),
            EventFilter(table="messages", event="UPDATE", filter=f"sender_id=neq.{user_id}"),
            EventFilter(table="conversation_participants", event="UPDATE", filter=f"user_id=eq.{user_id}"),
        ]

    async def handle_change(self, change: ChangeEvent):
        if change.table == "messages" and change.event_type == "INSERT":
            await self._tracker.handle_message_inserted(change.new)
        elif change.table == "messages" and change.event_type == "UPDATE":
            await self._tracker.handle_message_deleted(change.new)
        elif change.table == "conversation_participants" and change.event_type == "UPDATE":
            await self._tracker.handle_participant_updated(change.new)

    async def start(self):
        if self._started:
            return
        self._started = True
        await self._registry.acquire(self.key, self.filters(), self.handle_change)
        logger.debug(f"[UnreadSync] Started for user {self._tracker.user_id}")

    async def stop(self):
        if not self._started:
            return
        self._started = False
        self._tracker.close()
        await self._registry.release(self.key, self.handle_change)
        logger.debug(f"[UnreadSync] Stopped for user {self._tracker.user_id}")
