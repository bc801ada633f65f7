"""
Chat Security Service

Authorization predicates for conversations and messages. Every check fails
closed: a missing user, a missing row or an exception while checking all
answer ``False``. Callers turn a ``False`` into ``ForbiddenError``.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.crud import crud_chat, crud_conversation
from app.models.conversation_participant import ParticipantRole
from app.models.user import User
from app.services import user_service

logger = logging.getLogger(__name__)


@dataclass
class ParticipantValidation:
    valid: bool
    invalid_ids: List[int] = field(default_factory=list)


def log_security_event(action: str, success: bool, user_id: Optional[int] = None, conversation_id: Optional[int] = None, **details):
    """Structured audit line for an authorization decision."""
    extra = ", ".join(f"{k}={v}" for k, v in details.items())
    message = (
        f"[ChatSecurity] action={action}, success={success}, "
        f"user={user_id}, conversation={conversation_id}"
    )
    if extra:
        message = f"{message}, {extra}"
    if success:
        logger.info(message)
    else:
        logger.warning(message)


class ChatSecurity:
    def __init__(self, db: Session, current_user_provider: Callable[[], Optional[User]]):
        self.db = db
        self._current_user_provider = current_user_provider

    def current_user_id(self) -> Optional[int]:
        try:
            user = self._current_user_provider()
        except Exception as e:
            logger.warning(f"[ChatSecurity] Could not resolve current user: {e}")
            return None
        if user is None or not user.is_active:
            return None
        return user.id

    def _participant(self, conversation_id: int, user_id: Optional[int]):
        uid = user_id if user_id is not None else self.current_user_id()
        if uid is None:
            return None
        return crud_conversation.get_participant(self.db, conversation_id, uid)

    def is_participant(self, conversation_id: int, user_id: Optional[int] = None) -> bool:
        try:
            return self._participant(conversation_id, user_id) is not None
        except Exception as e:
            logger.error(f"[ChatSecurity] Participant check failed for conversation {conversation_id}: {e}")
            return False

    def is_conversation_admin(self, conversation_id: int, user_id: Optional[int] = None) -> bool:
        try:
            participant = self._participant(conversation_id, user_id)
            return participant is not None and participant.role == ParticipantRole.ADMIN.value
        except Exception as e:
            logger.error(f"[ChatSecurity] Admin check failed for conversation {conversation_id}: {e}")
            return False

    def can_view_conversation(self, conversation_id: int) -> bool:
        return self.is_participant(conversation_id)

    def can_send_message(self, conversation_id: int) -> bool:
        return self.is_participant(conversation_id)

    def can_add_participants(self, conversation_id: int) -> bool:
        return self.is_conversation_admin(conversation_id)

    def can_remove_participants(self, conversation_id: int) -> bool:
        return self.is_conversation_admin(conversation_id)

    def can_update_conversation(self, conversation_id: int) -> bool:
        return self.is_conversation_admin(conversation_id)

    def _is_sender(self, message_id: int) -> bool:
        try:
            uid = self.current_user_id()
            if uid is None:
                return False
            message = crud_chat.get_message_by_id(self.db, message_id)
            return message is not None and message.sender_id == uid
        except Exception as e:
            logger.error(f"[ChatSecurity] Sender check failed for message {message_id}: {e}")
            return False

    def can_edit_message(self, message_id: int) -> bool:
        # TODO: let conversation admins edit once moderation edits are exposed to clients
        return self._is_sender(message_id)

    def can_delete_message(self, message_id: int) -> bool:
        return self._is_sender(message_id)

    def validate_participants(self, user_ids: Iterable[int]) -> ParticipantValidation:
        """All ``user_ids`` must be existing, active users."""
        user_ids = list(user_ids)
        if self.current_user_id() is None:
            return ParticipantValidation(valid=False, invalid_ids=user_ids)
        try:
            found = {u.id for u in user_service.get_active_users_by_ids(self.db, user_ids)}
        except Exception as e:
            logger.error(f"[ChatSecurity] Participant validation failed: {e}")
            return ParticipantValidation(valid=False, invalid_ids=user_ids)
        invalid_ids = [uid for uid in user_ids if uid not in found]
        return ParticipantValidation(valid=not invalid_ids, invalid_ids=invalid_ids)
