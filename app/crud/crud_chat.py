import logging
from typing import Any, Dict, List, Optional, Tuple
import datetime

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from app.core.config import settings
from app.core.database import utcnow
from app.core.exceptions import ChatValidationError
from app.models import Conversation, ConversationParticipant, Message, MessageReaction
from app.schemas import chat as chat_schema

logger = logging.getLogger(__name__)


def normalize_content(content: Optional[str]) -> str:
    """Trim message content and enforce the 1..MESSAGE_MAX_LENGTH bound."""
    content = (content or "").strip()
    if not content:
        raise ChatValidationError("Message content is required")
    if len(content) > settings.MESSAGE_MAX_LENGTH:
        raise ChatValidationError(f"Message content must be at most {settings.MESSAGE_MAX_LENGTH} characters")
    return content

def normalize_emoji(emoji: Optional[str]) -> str:
    emoji = (emoji or "").strip()
    if not emoji:
        raise ChatValidationError("Emoji is required")
    if len(emoji) > settings.REACTION_EMOJI_MAX_LENGTH:
        raise ChatValidationError(f"Emoji must be at most {settings.REACTION_EMOJI_MAX_LENGTH} characters")
    return emoji


# CRUD for Message
def create_message(db: Session, conversation_id: int, sender_id: int, message: chat_schema.MessageCreate, message_type: Optional[str] = None) -> Message:
    """Insert a message and advance ``conversations.last_message_at`` in one transaction."""
    content = normalize_content(message.content)

    if message.reply_to_id is not None:
        parent = get_message_by_id(db, message.reply_to_id)
        if parent is None or parent.conversation_id != conversation_id or parent.deleted_at is not None:
            raise ChatValidationError("reply_to_id must reference a message in the same conversation")

    now = utcnow()
    db_message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        message_type=message_type or message.message_type,
        message_metadata=message.metadata,
        reply_to_id=message.reply_to_id,
        created_at=now,
    )
    db.add(db_message)
    try:
        db.flush()
        # Only ever moves forward
        db.query(Conversation).filter(
            Conversation.id == conversation_id,
            or_(Conversation.last_message_at.is_(None), Conversation.last_message_at < now),
        ).update({Conversation.last_message_at: now, Conversation.updated_at: now}, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message in conversation {conversation_id}: {e}")
        raise
    db.refresh(db_message)
    return db_message

def get_message_by_id(db: Session, message_id: int) -> Optional[Message]:
    return db.query(Message).filter(Message.id == message_id).first()

def get_conversation_message(db: Session, conversation_id: int, message_id: int, include_deleted: bool = False) -> Optional[Message]:
    query = db.query(Message).filter(Message.id == message_id, Message.conversation_id == conversation_id)
    if not include_deleted:
        query = query.filter(Message.deleted_at.is_(None))
    return query.first()

def get_conversation_messages(db: Session, conversation_id: int, skip: int = 0, limit: int = 50) -> List[Message]:
    return db.query(Message).options(
        joinedload(Message.sender),
        joinedload(Message.reactions),
        joinedload(Message.reply_to).joinedload(Message.sender),
    ).filter(
        Message.conversation_id == conversation_id,
        Message.deleted_at.is_(None),
    ).order_by(Message.created_at.asc(), Message.id.asc()).offset(skip).limit(limit).all()

def get_last_message(db: Session, conversation_id: int) -> Optional[Message]:
    return db.query(Message).filter(
        Message.conversation_id == conversation_id,
        Message.deleted_at.is_(None),
    ).order_by(Message.created_at.desc(), Message.id.desc()).first()

def edit_message(db: Session, message: Message, content: str) -> Message:
    message.content = normalize_content(content)
    message.edited_at = utcnow()
    db.commit()
    db.refresh(message)
    return message

def soft_delete_message(db: Session, message: Message) -> Message:
    # last_message_at is left as is; it records when activity happened
    message.deleted_at = utcnow()
    db.commit()
    db.refresh(message)
    return message

def merge_message_metadata(db: Session, message_id: int, patch: Dict[str, Any]) -> Optional[Message]:
    message = get_message_by_id(db, message_id)
    if message is None or message.deleted_at is not None:
        return None
    # Assign a new dict so the JSON column is flagged dirty
    message.message_metadata = {**(message.message_metadata or {}), **patch}
    db.commit()
    db.refresh(message)
    return message

def count_unread_messages(db: Session, conversation_id: int, user_id: int, since: Optional[datetime.datetime]) -> int:
    """Visible messages from other senders created after ``since`` (all of them when ``since`` is None)."""
    query = db.query(Message).filter(
        Message.conversation_id == conversation_id,
        Message.sender_id != user_id,
        Message.deleted_at.is_(None),
    )
    if since is not None:
        query = query.filter(Message.created_at > since)
    return query.count()


# CRUD for MessageReaction
def add_reaction(db: Session, message_id: int, user_id: int, emoji: str) -> Tuple[MessageReaction, bool]:
    """Add a reaction to a message. If it already exists, return the existing one."""
    emoji = normalize_emoji(emoji)
    existing_reaction = get_reaction(db, message_id, user_id, emoji)
    if existing_reaction:
        return existing_reaction, False

    db_reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
    db.add(db_reaction)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing_reaction = get_reaction(db, message_id, user_id, emoji)
        if existing_reaction is None:
            raise
        return existing_reaction, False
    db.refresh(db_reaction)
    return db_reaction, True

def get_reaction(db: Session, message_id: int, user_id: int, emoji: str) -> Optional[MessageReaction]:
    return db.query(MessageReaction).filter(
        MessageReaction.message_id == message_id,
        MessageReaction.user_id == user_id,
        MessageReaction.emoji == emoji
    ).first()

def remove_reaction(db: Session, message_id: int, user_id: int, emoji: str) -> bool:
    """Remove a reaction from a message. Returns True if deleted, False if not found."""
    result = db.query(MessageReaction).filter(
        MessageReaction.message_id == message_id,
        MessageReaction.user_id == user_id,
        MessageReaction.emoji == (emoji or "").strip()
    ).delete()
    db.commit()
    return result > 0

def get_message_reactions(db: Session, message_id: int) -> List[MessageReaction]:
    return db.query(MessageReaction).filter(MessageReaction.message_id == message_id).all()


# CRUD for Message Search
def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

def search_messages(db: Session, user_id: int, query: str, conversation_id: Optional[int] = None, skip: int = 0, limit: int = 50) -> Tuple[List[Message], int]:
    """
    Search visible messages by content (case-insensitive), restricted to
    conversations ``user_id`` participates in. Returns (page, total).
    """
    visible_conversations = db.query(ConversationParticipant.conversation_id).filter(
        ConversationParticipant.user_id == user_id
    )
    base = db.query(Message).filter(
        Message.conversation_id.in_(visible_conversations),
        Message.deleted_at.is_(None),
        Message.content.ilike(f"%{_escape_like(query)}%", escape="\\"),
    )
    if conversation_id is not None:
        base = base.filter(Message.conversation_id == conversation_id)

    total = base.count()
    results = base.options(
        joinedload(Message.sender),
        joinedload(Message.conversation),
        joinedload(Message.reply_to).joinedload(Message.sender),
    ).order_by(Message.created_at.desc(), Message.id.desc()).offset(skip).limit(limit).all()
    return results, total
