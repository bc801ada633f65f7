import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ChatValidationError, ForbiddenError, NotFoundError
from app.crud import crud_chat, crud_conversation
from app.models import Message, MessageReaction
from app.models.message import MessageType
from app.models.user import User
from app.schemas import chat as chat_schema
from app.services import chat_events, link_preview_service
from app.services.chat_security import ChatSecurity, log_security_event
from app.services.realtime_bus import RealtimeBus

logger = logging.getLogger(__name__)


def _require_participant(security: ChatSecurity, conversation_id: int, action: str):
    if not security.can_send_message(conversation_id):
        log_security_event(action, False, security.current_user_id(), conversation_id)
        raise ForbiddenError("You are not a participant in this conversation")


def _get_visible_message(db: Session, conversation_id: int, message_id: int) -> Message:
    message = crud_chat.get_conversation_message(db, conversation_id, message_id)
    if message is None:
        raise NotFoundError("Message not found")
    return message


def list_messages(db: Session, security: ChatSecurity, conversation_id: int, skip: int = 0, limit: int = 50) -> List[Message]:
    if not security.can_view_conversation(conversation_id):
        raise ForbiddenError("You are not a participant in this conversation")
    return crud_chat.get_conversation_messages(db, conversation_id, skip=skip, limit=limit)


async def post_message(
    db: Session,
    security: ChatSecurity,
    current_user: User,
    conversation_id: int,
    message_in: chat_schema.MessageCreate,
    bus: Optional[RealtimeBus] = None,
    session_factory=None,
) -> Message:
    """
    Store a message from a participant and fan it out.

    A text message containing a URL additionally gets a link preview in the
    background when ``session_factory`` is given.
    """
    _require_participant(security, conversation_id, "send_message")
    message = crud_chat.create_message(db, conversation_id, current_user.id, message_in)

    participant_ids = crud_conversation.get_participant_user_ids(db, conversation_id)
    payload = chat_schema.Message.model_validate(message)
    await chat_events.message_inserted(bus, message, participant_ids, payload.model_dump())

    if session_factory is not None and message.message_type == MessageType.TEXT.value:
        async def on_preview(updated: Message):
            await chat_events.message_updated(
                bus, updated, participant_ids, chat_schema.Message.model_validate(updated).model_dump()
            )

        link_preview_service.schedule_link_preview(message.id, message.content, session_factory, on_preview)
    return message


async def edit_message(db: Session, security: ChatSecurity, conversation_id: int, message_id: int, content: str, bus: Optional[RealtimeBus] = None) -> Message:
    _require_participant(security, conversation_id, "edit_message")
    message = _get_visible_message(db, conversation_id, message_id)
    if not security.can_edit_message(message_id):
        log_security_event("edit_message", False, security.current_user_id(), conversation_id, message_id=message_id)
        raise ForbiddenError("You can only edit your own messages")
    message = crud_chat.edit_message(db, message, content)

    participant_ids = crud_conversation.get_participant_user_ids(db, conversation_id)
    await chat_events.message_updated(bus, message, participant_ids, chat_schema.Message.model_validate(message).model_dump())
    return message


async def delete_message(db: Session, security: ChatSecurity, conversation_id: int, message_id: int, bus: Optional[RealtimeBus] = None) -> Message:
    _require_participant(security, conversation_id, "delete_message")
    message = _get_visible_message(db, conversation_id, message_id)
    if not security.can_delete_message(message_id):
        log_security_event("delete_message", False, security.current_user_id(), conversation_id, message_id=message_id)
        raise ForbiddenError("You can only delete your own messages")
    message = crud_chat.soft_delete_message(db, message)

    participant_ids = crud_conversation.get_participant_user_ids(db, conversation_id)
    await chat_events.message_updated(bus, message, participant_ids, chat_events.message_record(message))
    return message


async def add_reaction(db: Session, security: ChatSecurity, current_user: User, conversation_id: int, message_id: int, emoji: str) -> Tuple[MessageReaction, bool]:
    _require_participant(security, conversation_id, "add_reaction")
    _get_visible_message(db, conversation_id, message_id)
    reaction, created = crud_chat.add_reaction(db, message_id, current_user.id, emoji)
    if created:
        participant_ids = crud_conversation.get_participant_user_ids(db, conversation_id)
        await chat_events.notify_users(participant_ids, "reaction_added", {
            "message_id": message_id,
            "reaction": chat_schema.MessageReaction.model_validate(reaction).model_dump(),
        })
    return reaction, created


async def remove_reaction(db: Session, security: ChatSecurity, current_user: User, conversation_id: int, message_id: int, emoji: str) -> None:
    _require_participant(security, conversation_id, "remove_reaction")
    _get_visible_message(db, conversation_id, message_id)
    if not crud_chat.remove_reaction(db, message_id, current_user.id, emoji):
        raise NotFoundError("Reaction not found")
    participant_ids = crud_conversation.get_participant_user_ids(db, conversation_id)
    await chat_events.notify_users(participant_ids, "reaction_removed", {
        "message_id": message_id,
        "user_id": current_user.id,
        "emoji": emoji.strip(),
    })


def list_reactions(db: Session, security: ChatSecurity, conversation_id: int, message_id: int) -> List[MessageReaction]:
    _require_participant(security, conversation_id, "list_reactions")
    _get_visible_message(db, conversation_id, message_id)
    return crud_chat.get_message_reactions(db, message_id)


# Search
def highlight(content: str, query: str) -> str:
    return re.sub(re.escape(query), lambda m: f"<mark>{m.group(0)}</mark>", content, flags=re.IGNORECASE)


def search_messages(
    db: Session,
    security: ChatSecurity,
    current_user: User,
    query: str,
    conversation_id: Optional[int] = None,
    limit: int = settings.SEARCH_DEFAULT_LIMIT,
    offset: int = 0,
) -> chat_schema.SearchResponse:
    query = (query or "").strip()
    if not settings.SEARCH_MIN_QUERY_LENGTH <= len(query) <= settings.SEARCH_MAX_QUERY_LENGTH:
        raise ChatValidationError(
            f"Search query must be between {settings.SEARCH_MIN_QUERY_LENGTH} and {settings.SEARCH_MAX_QUERY_LENGTH} characters"
        )
    if not 1 <= limit <= settings.SEARCH_MAX_LIMIT:
        raise ChatValidationError(f"limit must be between 1 and {settings.SEARCH_MAX_LIMIT}")
    if not 0 <= offset <= settings.SEARCH_MAX_OFFSET:
        raise ChatValidationError(f"offset must be between 0 and {settings.SEARCH_MAX_OFFSET}")
    if conversation_id is not None and not security.can_view_conversation(conversation_id):
        raise ForbiddenError("You are not a participant in this conversation")

    messages, total = crud_chat.search_messages(db, current_user.id, query, conversation_id=conversation_id, skip=offset, limit=limit)
    results = []
    for message in messages:
        reply_to = None
        if message.reply_to is not None and message.reply_to.deleted_at is None:
            reply_to = chat_schema.ReplyPreview.model_validate(message.reply_to)
        results.append(chat_schema.SearchResult(
            id=message.id,
            content=message.content,
            created_at=message.created_at,
            conversation_id=message.conversation_id,
            conversation_title=message.conversation.title if message.conversation else None,
            sender=chat_schema.UserInChat.model_validate(message.sender) if message.sender else None,
            reply_to=reply_to,
            highlighted_content=highlight(message.content, query),
        ))
    return chat_schema.SearchResponse(
        results=results,
        total=total,
        query=query,
        limit=limit,
        offset=offset,
        has_more=offset + len(results) < total,
    )
