"""
Unread tracking for a single user's direct conversations.

``UnreadTracker`` keeps per-conversation unread counts in memory. It is
seeded from the database once, then kept current incrementally from realtime
message inserts and soft deletes, and fully recomputed whenever the user's own participant row
changes. Marking a conversation read is applied optimistically and rolled
back if the write fails.
"""
import datetime
import enum
import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional

from app.core.database import SessionLocal, utcnow
from app.crud import crud_chat, crud_conversation
from app.models.conversation import ConversationType
from app.schemas import chat as chat_schema

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Normalize a record timestamp (datetime or ISO string) to naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class ReadPosition:
    conversation_id: int
    conversation_type: str
    last_read_at: Optional[datetime.datetime]
    last_message_at: Optional[datetime.datetime]


@dataclass
class ConversationUnreadState:
    conversation_id: int
    last_read_at: Optional[datetime.datetime] = None
    last_message_at: Optional[datetime.datetime] = None
    unread_count: int = 0

    @property
    def has_unread(self) -> bool:
        if self.last_message_at is None:
            return False
        return self.last_read_at is None or self.last_message_at > self.last_read_at

    def to_schema(self) -> chat_schema.ConversationUnread:
        return chat_schema.ConversationUnread(
            conversation_id=self.conversation_id,
            unread_count=self.unread_count,
            has_unread=self.has_unread,
            last_read_at=self.last_read_at,
            last_message_at=self.last_message_at,
        )


class MutationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PendingMutation:
    """An optimistic mark-read awaiting confirmation."""
    conversation_id: int
    previous: Optional[ConversationUnreadState]
    optimistic_read_at: datetime.datetime
    status: MutationStatus = MutationStatus.PENDING
    # Net change in qualifying messages (arrivals minus deletions) while the write was in flight
    arrived_during: int = 0


class SqlUnreadDataSource:
    """Reads and writes read positions through short-lived database sessions."""

    def __init__(self, session_factory=SessionLocal, mark_read_func: Optional[Callable] = None):
        self._session_factory = session_factory
        self._mark_read_func = mark_read_func

    async def fetch_direct_read_positions(self, user_id: int) -> List[ReadPosition]:
        db = self._session_factory()
        try:
            rows = crud_conversation.get_read_positions(db, user_id, ConversationType.DIRECT.value)
            return [ReadPosition(r[0], r[1], r[2], r[3]) for r in rows]
        finally:
            db.close()

    async def fetch_read_position(self, conversation_id: int, user_id: int) -> Optional[ReadPosition]:
        db = self._session_factory()
        try:
            row = crud_conversation.get_read_position(db, conversation_id, user_id)
            if row is None:
                return None
            return ReadPosition(conversation_id, row[0], row[1], row[2])
        finally:
            db.close()

    async def count_unread(self, conversation_id: int, user_id: int, since: Optional[datetime.datetime]) -> int:
        db = self._session_factory()
        try:
            return crud_chat.count_unread_messages(db, conversation_id, user_id, since)
        finally:
            db.close()

    async def mark_read(self, conversation_id: int, user_id: int) -> datetime.datetime:
        db = self._session_factory()
        try:
            if self._mark_read_func is not None:
                result = self._mark_read_func(db, conversation_id, user_id)
                participant = await result if inspect.isawaitable(result) else result
            else:
                participant = crud_conversation.mark_conversation_read(db, conversation_id, user_id)
            if participant is None:
                raise LookupError(f"User {user_id} is not a participant of conversation {conversation_id}")
            return participant.last_read_at
        finally:
            db.close()


class UnreadTracker:
    def __init__(self, user_id: int, data_source):
        self.user_id = user_id
        self._source = data_source
        self._states: Dict[int, ConversationUnreadState] = {}
        self._pending: Dict[int, PendingMutation] = {}
        self._listeners: List[Callable] = []
        self._closed = False
        self.initialized = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def total_unread(self) -> int:
        return sum(state.unread_count for state in self._states.values())

    def get_state(self, conversation_id: int) -> Optional[ConversationUnreadState]:
        return self._states.get(conversation_id)

    def unread_count(self, conversation_id: int) -> int:
        state = self._states.get(conversation_id)
        return state.unread_count if state else 0

    def pending_mutation(self, conversation_id: int) -> Optional[PendingMutation]:
        return self._pending.get(conversation_id)

    def summary(self) -> chat_schema.UnreadSummary:
        conversations = [state.to_schema() for state in sorted(self._states.values(), key=lambda s: s.conversation_id)]
        return chat_schema.UnreadSummary(conversations=conversations, total_unread=self.total_unread)

    def add_listener(self, listener: Callable[[chat_schema.UnreadSummary], Any]):
        self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self):
        if self._closed:
            return
        summary = self.summary()
        for listener in list(self._listeners):
            try:
                result = listener(summary)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[UnreadTracker] Listener failed for user {self.user_id}: {e}")

    async def _build_state(self, position: ReadPosition) -> ConversationUnreadState:
        state = ConversationUnreadState(
            conversation_id=position.conversation_id,
            last_read_at=parse_timestamp(position.last_read_at),
            last_message_at=parse_timestamp(position.last_message_at),
        )
        # Nothing can be unread without a newer message, so skip the count query
        if state.has_unread:
            state.unread_count = await self._source.count_unread(position.conversation_id, self.user_id, state.last_read_at)
        return state

    async def initialize(self) -> chat_schema.UnreadSummary:
        positions = await self._source.fetch_direct_read_positions(self.user_id)
        states: Dict[int, ConversationUnreadState] = {}
        for position in positions:
            if self._closed:
                return self.summary()
            states[position.conversation_id] = await self._build_state(position)
        if self._closed:
            return self.summary()
        self._states = states
        self.initialized = True
        logger.debug(f"[UnreadTracker] Initialized user {self.user_id}: {len(states)} conversations, {self.total_unread} unread")
        await self._notify()
        return self.summary()

    async def handle_message_inserted(self, record: Mapping[str, Any]):
        if self._closed:
            return
        if int(record.get("sender_id")) == self.user_id:
            return
        if record.get("deleted_at"):
            return

        conversation_id = int(record["conversation_id"])
        created_at = parse_timestamp(record.get("created_at")) or utcnow()

        state = self._states.get(conversation_id)
        if state is None:
            position = await self._source.fetch_read_position(conversation_id, self.user_id)
            if self._closed or position is None or position.conversation_type != ConversationType.DIRECT.value:
                return
            if conversation_id in self._states:
                # Tracked meanwhile by a concurrent event; fall through to the increment
                state = self._states[conversation_id]
            else:
                # The fresh count already includes this committed message
                self._states[conversation_id] = await self._build_state(position)
                if not self._closed:
                    await self._notify()
                return

        if state.last_read_at is None or created_at > state.last_read_at:
            state.unread_count += 1
            pending = self._pending.get(conversation_id)
            if pending is not None:
                pending.arrived_during += 1
        if state.last_message_at is None or created_at > state.last_message_at:
            state.last_message_at = created_at
        await self._notify()

    async def handle_message_deleted(self, record: Mapping[str, Any]):
        """A message was soft-deleted: drop it from the count if it was counted."""
        if self._closed or not record.get("deleted_at"):
            return
        if int(record.get("sender_id")) == self.user_id:
            return
        state = self._states.get(int(record["conversation_id"]))
        if state is None:
            return
        created_at = parse_timestamp(record.get("created_at"))
        if created_at is None:
            return

        counted_now = state.unread_count > 0 and (state.last_read_at is None or created_at > state.last_read_at)
        pending = self._pending.get(state.conversation_id)
        if pending is not None:
            # A rollback restores the pre-read count, so take the message out of it too
            previous_read_at = pending.previous.last_read_at if pending.previous else None
            if previous_read_at is None or created_at > previous_read_at:
                pending.arrived_during -= 1
        if not counted_now:
            return
        state.unread_count -= 1
        await self._notify()

    async def handle_participant_updated(self, record: Mapping[str, Any]):
        """The user's own read position changed somewhere: recompute that conversation."""
        if self._closed:
            return
        if int(record.get("user_id")) != self.user_id:
            return
        conversation_id = int(record["conversation_id"])
        position = await self._source.fetch_read_position(conversation_id, self.user_id)
        if self._closed:
            return
        if position is None:
            # No longer a participant
            if self._states.pop(conversation_id, None) is not None:
                await self._notify()
            return
        if position.conversation_type != ConversationType.DIRECT.value:
            return
        self._states[conversation_id] = await self._build_state(position)
        await self._notify()

    async def mark_conversation_read(self, conversation_id: int) -> datetime.datetime:
        """
        Zero the conversation's count immediately, then persist.

        On failure the previous state is restored (plus any messages that
        arrived in the meantime) and the error is re-raised.
        """
        if self._closed:
            raise RuntimeError("Unread tracker is closed")
        state = self._states.get(conversation_id)
        mutation = PendingMutation(
            conversation_id=conversation_id,
            previous=replace(state) if state is not None else None,
            optimistic_read_at=utcnow(),
        )
        self._pending[conversation_id] = mutation
        if state is not None:
            state.unread_count = 0
            state.last_read_at = mutation.optimistic_read_at
            await self._notify()

        try:
            confirmed_at = await self._source.mark_read(conversation_id, self.user_id)
        except Exception as e:
            mutation.status = MutationStatus.ROLLED_BACK
            if self._pending.get(conversation_id) is mutation:
                del self._pending[conversation_id]
            if not self._closed and mutation.previous is not None:
                restored = replace(mutation.previous)
                restored.unread_count = max(0, restored.unread_count + mutation.arrived_during)
                current = self._states.get(conversation_id)
                if current is not None and current.last_message_at and (
                    restored.last_message_at is None or current.last_message_at > restored.last_message_at
                ):
                    restored.last_message_at = current.last_message_at
                self._states[conversation_id] = restored
                await self._notify()
            logger.warning(f"[UnreadTracker] Mark-read failed for user {self.user_id} in conversation {conversation_id}, rolled back: {e}")
            raise

        mutation.status = MutationStatus.CONFIRMED
        if self._pending.get(conversation_id) is mutation:
            del self._pending[conversation_id]
        confirmed_at = parse_timestamp(confirmed_at) or mutation.optimistic_read_at
        current = self._states.get(conversation_id)
        if current is not None and (current.last_read_at is None or confirmed_at > current.last_read_at):
            current.last_read_at = confirmed_at
            await self._notify()
        return confirmed_at

    def close(self):
        """Stop applying changes; late async completions become no-ops."""
        self._closed = True
        self._listeners.clear()
