import datetime
import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from app.core.database import utcnow
from app.core.exceptions import ChatError, ChatValidationError
from app.models import Conversation, ConversationParticipant
from app.models.conversation import ConversationType
from app.models.conversation_participant import ParticipantRole
from app.schemas import chat as chat_schema
from app.services import user_service

logger = logging.getLogger(__name__)

CONVERSATION_TYPES = {t.value for t in ConversationType}


def _add_participants(db: Session, conversation_id: int, user_ids: Sequence[int], creator_id: Optional[int], creator_role: str):
    for user_id in user_ids:
        role = creator_role if user_id == creator_id else ParticipantRole.MEMBER.value
        db.add(ConversationParticipant(conversation_id=conversation_id, user_id=user_id, role=role))
    db.flush()


# CRUD for Conversation
def create_conversation(
    db: Session,
    conversation_type: str,
    participant_user_ids: Sequence[int],
    creator_id: Optional[int] = None,
    creator_role: str = ParticipantRole.ADMIN.value,
    title: Optional[str] = None,
    description: Optional[str] = None,
    is_private: Optional[bool] = None,
    collective_id: Optional[int] = None,
) -> Conversation:
    """
    Create a conversation together with all of its initial participants.

    The creator (if given) is always a participant with ``creator_role``;
    everyone else joins as a member. Either every row is committed or none is.
    """
    if conversation_type not in CONVERSATION_TYPES:
        raise ChatValidationError(f"Invalid conversation type: {conversation_type}")

    user_ids = list(dict.fromkeys(participant_user_ids))
    if creator_id is not None and creator_id not in user_ids:
        user_ids.insert(0, creator_id)
    if len(user_ids) < 1:
        raise ChatValidationError("A conversation needs at least one participant")
    if conversation_type == ConversationType.DIRECT.value and len(user_ids) != 2:
        raise ChatValidationError("A direct conversation has exactly two participants")

    found = {u.id for u in user_service.get_active_users_by_ids(db, user_ids)}
    invalid_ids = [uid for uid in user_ids if uid not in found]
    if invalid_ids:
        raise ChatValidationError(f"Invalid participant IDs: {', '.join(str(i) for i in invalid_ids)}")

    if is_private is None:
        is_private = conversation_type != ConversationType.CHANNEL.value

    db_conversation = Conversation(
        type=conversation_type,
        title=title,
        description=description,
        is_private=is_private,
        collective_id=collective_id,
        created_by=creator_id,
    )
    db.add(db_conversation)
    try:
        db.flush()
        _add_participants(db, db_conversation.id, user_ids, creator_id, creator_role)
        db.commit()
    except SQLAlchemyError as e:
        # Nothing from this unit may survive: a conversation without participants is invalid
        db.rollback()
        logger.error(f"Failed to create {conversation_type} conversation for creator {creator_id}: {e}")
        raise ChatError("Failed to create conversation") from e
    db.refresh(db_conversation)
    logger.info(f"Created {conversation_type} conversation {db_conversation.id} with {len(user_ids)} participants")
    return db_conversation

def get_conversation(db: Session, conversation_id: int) -> Optional[Conversation]:
    return db.query(Conversation).options(
        joinedload(Conversation.participants).joinedload(ConversationParticipant.user)
    ).filter(Conversation.id == conversation_id).first()

def get_direct_conversation_between(db: Session, user_id: int, other_user_id: int) -> Optional[Conversation]:
    mine = db.query(ConversationParticipant.conversation_id).filter(ConversationParticipant.user_id == user_id)
    return db.query(Conversation).join(ConversationParticipant).filter(
        Conversation.type == ConversationType.DIRECT.value,
        Conversation.id.in_(mine),
        ConversationParticipant.user_id == other_user_id,
    ).first()

def get_or_create_direct_conversation(db: Session, user_id: int, recipient_id: int) -> Tuple[Conversation, bool]:
    if user_id == recipient_id:
        raise ChatValidationError("Cannot create a direct conversation with yourself")
    existing = get_direct_conversation_between(db, user_id, recipient_id)
    if existing is not None:
        return existing, False
    conversation = create_conversation(
        db,
        ConversationType.DIRECT.value,
        [user_id, recipient_id],
        creator_id=user_id,
        creator_role=ParticipantRole.MEMBER.value,
    )
    return conversation, True

def get_user_conversations(db: Session, user_id: int) -> List[Conversation]:
    return db.query(Conversation).join(ConversationParticipant).options(
        joinedload(Conversation.participants).joinedload(ConversationParticipant.user)
    ).filter(ConversationParticipant.user_id == user_id).order_by(
        Conversation.last_message_at.is_(None),
        desc(Conversation.last_message_at),
        desc(Conversation.created_at),
    ).all()

def update_conversation(db: Session, conversation: Conversation, conversation_in: chat_schema.ConversationUpdate) -> Conversation:
    update_data = conversation_in.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        setattr(conversation, field, value)
    db.commit()
    db.refresh(conversation)
    return conversation

def get_collective_channels(db: Session, collective_id: int) -> List[Conversation]:
    return db.query(Conversation).filter(
        Conversation.collective_id == collective_id,
        Conversation.type == ConversationType.CHANNEL.value,
    ).order_by(Conversation.created_at.asc()).all()


# CRUD for ConversationParticipant
def get_participant(db: Session, conversation_id: int, user_id: int) -> Optional[ConversationParticipant]:
    return db.query(ConversationParticipant).filter(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ).first()

def get_participants(db: Session, conversation_id: int) -> List[ConversationParticipant]:
    return db.query(ConversationParticipant).filter(
        ConversationParticipant.conversation_id == conversation_id
    ).all()

def get_participant_user_ids(db: Session, conversation_id: int) -> List[int]:
    rows = db.query(ConversationParticipant.user_id).filter(
        ConversationParticipant.conversation_id == conversation_id
    ).all()
    return [row[0] for row in rows]

def join_conversation(db: Session, conversation_id: int, user_id: int, role: str = ParticipantRole.MEMBER.value) -> Tuple[ConversationParticipant, bool]:
    """Idempotent: an existing membership is returned unchanged with ``created=False``."""
    existing = get_participant(db, conversation_id, user_id)
    if existing is not None:
        return existing, False
    db_participant = ConversationParticipant(conversation_id=conversation_id, user_id=user_id, role=role)
    db.add(db_participant)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race against a concurrent join of the same user
        db.rollback()
        existing = get_participant(db, conversation_id, user_id)
        if existing is None:
            raise
        return existing, False
    db.refresh(db_participant)
    return db_participant, True

def leave_conversation(db: Session, conversation_id: int, user_id: int) -> bool:
    """Delete the membership row. Messages the user already sent stay."""
    deleted = db.query(ConversationParticipant).filter(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ).delete()
    db.commit()
    return deleted > 0


# Read positions
def mark_conversation_read(db: Session, conversation_id: int, user_id: int, read_at: Optional[datetime.datetime] = None) -> Optional[ConversationParticipant]:
    participant = get_participant(db, conversation_id, user_id)
    if participant is None:
        return None
    read_at = read_at or utcnow()
    # last_read_at never moves backwards
    if participant.last_read_at is None or read_at > participant.last_read_at:
        participant.last_read_at = read_at
    db.commit()
    db.refresh(participant)
    return participant

def get_read_position(db: Session, conversation_id: int, user_id: int):
    """(type, last_read_at, last_message_at) for a participant, or None."""
    return db.query(
        Conversation.type,
        ConversationParticipant.last_read_at,
        Conversation.last_message_at,
    ).join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id).filter(
        Conversation.id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ).first()

def get_read_positions(db: Session, user_id: int, conversation_type: Optional[str] = ConversationType.DIRECT.value):
    """(conversation_id, type, last_read_at, last_message_at) rows for every conversation of a user."""
    query = db.query(
        Conversation.id,
        Conversation.type,
        ConversationParticipant.last_read_at,
        Conversation.last_message_at,
    ).join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id).filter(
        ConversationParticipant.user_id == user_id
    )
    if conversation_type is not None:
        query = query.filter(Conversation.type == conversation_type)
    return query.all()
