"""
Ephemeral conversation activity for one socket: typing indicators and presence.

Nothing here is persisted. Frames go only to the other participants of the
conversation, and a typing indicator stops on its own once the user has been
quiet for ``TYPING_TIMEOUT_SECONDS``.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set

from app.core.config import settings
from app.core.database import utcnow
from app.crud import crud_conversation
from app.services import chat_events
from app.services.chat_security import log_security_event

logger = logging.getLogger(__name__)


class ConversationActivity:
    def __init__(self, user_id: int, session_factory, typing_timeout: Optional[float] = None):
        self.user_id = user_id
        self._session_factory = session_factory
        self._typing_timeout = settings.TYPING_TIMEOUT_SECONDS if typing_timeout is None else typing_timeout
        self._typing_timers: Dict[int, asyncio.Task] = {}
        self._present: Set[int] = set()

    def is_typing(self, conversation_id: int) -> bool:
        return conversation_id in self._typing_timers

    def is_present(self, conversation_id: int) -> bool:
        return conversation_id in self._present

    def _recipients(self, conversation_id: int, action: str) -> Optional[List[int]]:
        """Other participants, or None when the user is not a participant."""
        db = self._session_factory()
        try:
            user_ids = crud_conversation.get_participant_user_ids(db, conversation_id)
        finally:
            db.close()
        if self.user_id not in user_ids:
            log_security_event(action, False, self.user_id, conversation_id)
            return None
        return [user_id for user_id in user_ids if user_id != self.user_id]

    async def _announce(self, conversation_id: int, event_type: str, recipients: List[int]):
        payload = {"conversation_id": conversation_id, "user_id": self.user_id, "timestamp": utcnow()}
        await chat_events.notify_users(recipients, event_type, payload)

    async def start_typing(self, conversation_id: int) -> bool:
        recipients = self._recipients(conversation_id, "typing")
        if recipients is None:
            return False
        timer = self._typing_timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()
        self._typing_timers[conversation_id] = asyncio.create_task(self._auto_stop(conversation_id, recipients))
        await self._announce(conversation_id, "typing_start", recipients)
        return True

    async def _auto_stop(self, conversation_id: int, recipients: List[int]):
        await asyncio.sleep(self._typing_timeout)
        if self._typing_timers.get(conversation_id) is not asyncio.current_task():
            return
        del self._typing_timers[conversation_id]
        logger.debug(f"[ConversationActivity] Typing timed out for user {self.user_id} in conversation {conversation_id}")
        await self._announce(conversation_id, "typing_stop", recipients)

    async def stop_typing(self, conversation_id: int) -> bool:
        timer = self._typing_timers.pop(conversation_id, None)
        if timer is None:
            return False
        timer.cancel()
        recipients = self._recipients(conversation_id, "typing")
        if recipients is not None:
            await self._announce(conversation_id, "typing_stop", recipients)
        return True

    async def join(self, conversation_id: int) -> bool:
        recipients = self._recipients(conversation_id, "presence")
        if recipients is None:
            return False
        if conversation_id not in self._present:
            self._present.add(conversation_id)
            await self._announce(conversation_id, "user_join", recipients)
        return True

    async def leave(self, conversation_id: int) -> bool:
        await self.stop_typing(conversation_id)
        if conversation_id not in self._present:
            return False
        self._present.discard(conversation_id)
        # Announced even if the user has just left the conversation itself
        db = self._session_factory()
        try:
            user_ids = crud_conversation.get_participant_user_ids(db, conversation_id)
        finally:
            db.close()
        await self._announce(conversation_id, "user_leave", [user_id for user_id in user_ids if user_id != self.user_id])
        return True

    async def close(self):
        """Stop every indicator and leave every conversation; called when the socket goes away."""
        for conversation_id in list(self._typing_timers):
            await self.stop_typing(conversation_id)
        for conversation_id in list(self._present):
            await self.leave(conversation_id)
