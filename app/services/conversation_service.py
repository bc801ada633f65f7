import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ChatValidationError, ForbiddenError, NotFoundError
from app.crud import crud_chat, crud_collective, crud_conversation
from app.models import Conversation, ConversationParticipant
from app.models.collective import MANAGER_ROLES
from app.models.conversation import ConversationType
from app.models.conversation_participant import ParticipantRole
from app.models.user import User
from app.schemas import chat as chat_schema
from app.services import chat_events
from app.services.chat_security import ChatSecurity, log_security_event
from app.services.realtime_bus import RealtimeBus

logger = logging.getLogger(__name__)


def _validate_title(title: Optional[str]) -> Optional[str]:
    if title is None:
        return None
    title = title.strip()
    if len(title) > settings.CONVERSATION_TITLE_MAX_LENGTH:
        raise ChatValidationError(f"Title must be at most {settings.CONVERSATION_TITLE_MAX_LENGTH} characters")
    return title or None


def get_visible_conversation(db: Session, security: ChatSecurity, conversation_id: int) -> Conversation:
    """404 both for missing conversations and ones the caller does not participate in."""
    if not security.can_view_conversation(conversation_id):
        raise NotFoundError("Conversation not found")
    conversation = crud_conversation.get_conversation(db, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


def create_conversation(db: Session, security: ChatSecurity, current_user: User, conversation_in: chat_schema.ConversationCreate) -> Tuple[Conversation, bool]:
    """Returns (conversation, created). A direct conversation that already exists is reused."""
    other_ids = [uid for uid in dict.fromkeys(conversation_in.participant_ids) if uid != current_user.id]

    if conversation_in.type == ConversationType.DIRECT.value:
        if len(other_ids) != 1:
            raise ChatValidationError("A direct conversation needs exactly one other participant")
    elif conversation_in.type == ConversationType.GROUP.value and not other_ids:
        raise ChatValidationError("At least one participant is required")

    validation = security.validate_participants(other_ids)
    if not validation.valid:
        raise ChatValidationError(f"Invalid participant IDs: {', '.join(str(i) for i in validation.invalid_ids)}")

    if conversation_in.type == ConversationType.DIRECT.value:
        return crud_conversation.get_or_create_direct_conversation(db, current_user.id, other_ids[0])

    conversation = crud_conversation.create_conversation(
        db,
        conversation_in.type,
        other_ids,
        creator_id=current_user.id,
        creator_role=ParticipantRole.ADMIN.value,
        title=_validate_title(conversation_in.title),
        description=conversation_in.description,
        is_private=conversation_in.is_private,
    )
    return conversation, True


def get_or_create_direct_conversation(db: Session, security: ChatSecurity, current_user: User, recipient_id: int) -> Tuple[Conversation, bool]:
    if recipient_id == current_user.id:
        raise ChatValidationError("Cannot create a direct conversation with yourself")
    validation = security.validate_participants([recipient_id])
    if not validation.valid:
        raise NotFoundError("Recipient not found")
    conversation, created = crud_conversation.get_or_create_direct_conversation(db, current_user.id, recipient_id)
    if created:
        logger.info(f"Direct conversation {conversation.id} created between {current_user.id} and {recipient_id}")
    return conversation, created


def list_conversations(db: Session, current_user: User) -> List[chat_schema.ConversationSummary]:
    summaries = []
    for conversation in crud_conversation.get_user_conversations(db, current_user.id):
        participant = next((p for p in conversation.participants if p.user_id == current_user.id), None)
        last_read_at = participant.last_read_at if participant else None
        last_message = crud_chat.get_last_message(db, conversation.id)

        has_unread = conversation.last_message_at is not None and (
            last_read_at is None or conversation.last_message_at > last_read_at
        )
        unread_count = crud_chat.count_unread_messages(db, conversation.id, current_user.id, last_read_at) if has_unread else 0

        summary = chat_schema.ConversationSummary.model_validate(conversation)
        summary.last_message = chat_schema.Message.model_validate(last_message) if last_message else None
        summary.unread_count = unread_count
        summary.has_unread = has_unread
        summaries.append(summary)
    return summaries


def update_conversation(db: Session, security: ChatSecurity, conversation_id: int, conversation_in: chat_schema.ConversationUpdate) -> Conversation:
    conversation = get_visible_conversation(db, security, conversation_id)
    if not security.can_update_conversation(conversation_id):
        log_security_event("update_conversation", False, security.current_user_id(), conversation_id)
        raise ForbiddenError("Only conversation admins can update the conversation")
    if conversation.type == ConversationType.DIRECT.value:
        raise ChatValidationError("Direct conversations cannot be edited")
    if "title" in conversation_in.model_fields_set:
        conversation_in.title = _validate_title(conversation_in.title)
    return crud_conversation.update_conversation(db, conversation, conversation_in)


def join_conversation(db: Session, current_user: User, conversation_id: int) -> Tuple[ConversationParticipant, bool]:
    """Self-join a public channel. Repeated joins return the existing membership."""
    conversation = crud_conversation.get_conversation(db, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")

    existing = crud_conversation.get_participant(db, conversation_id, current_user.id)
    if existing is not None:
        return existing, False

    if conversation.type != ConversationType.CHANNEL.value:
        raise NotFoundError("Conversation not found")
    if conversation.collective_id is not None:
        return join_collective_channel(db, current_user, conversation.collective_id, conversation_id)
    if conversation.is_private:
        log_security_event("join_conversation", False, current_user.id, conversation_id, reason="private")
        raise ForbiddenError("This channel is private")
    return crud_conversation.join_conversation(db, conversation_id, current_user.id)


def leave_conversation(db: Session, current_user: User, conversation_id: int) -> None:
    if not crud_conversation.leave_conversation(db, conversation_id, current_user.id):
        raise NotFoundError("Conversation not found")
    logger.info(f"User {current_user.id} left conversation {conversation_id}")


def add_participant(db: Session, security: ChatSecurity, conversation_id: int, participant_in: chat_schema.ParticipantAdd) -> Tuple[ConversationParticipant, bool]:
    conversation = get_visible_conversation(db, security, conversation_id)
    if not security.can_add_participants(conversation_id):
        log_security_event("add_participant", False, security.current_user_id(), conversation_id, target=participant_in.user_id)
        raise ForbiddenError("Only conversation admins can add participants")
    if conversation.type == ConversationType.DIRECT.value:
        raise ChatValidationError("Cannot add participants to a direct conversation")
    validation = security.validate_participants([participant_in.user_id])
    if not validation.valid:
        raise ChatValidationError(f"Invalid participant IDs: {participant_in.user_id}")
    return crud_conversation.join_conversation(db, conversation_id, participant_in.user_id, role=participant_in.role)


def remove_participant(db: Session, security: ChatSecurity, conversation_id: int, user_id: int) -> None:
    get_visible_conversation(db, security, conversation_id)
    if not security.can_remove_participants(conversation_id):
        log_security_event("remove_participant", False, security.current_user_id(), conversation_id, target=user_id)
        raise ForbiddenError("Only conversation admins can remove participants")
    if not crud_conversation.leave_conversation(db, conversation_id, user_id):
        raise NotFoundError("Participant not found")


async def mark_conversation_read(db: Session, conversation_id: int, user_id: int, bus: Optional[RealtimeBus] = None) -> Optional[ConversationParticipant]:
    """Persist the read position and announce it; None if the user is not a participant."""
    participant = crud_conversation.mark_conversation_read(db, conversation_id, user_id)
    if participant is None:
        return None
    await chat_events.participant_updated(bus, participant)
    return participant


# Collectives
def _require_collective_member(db: Session, current_user: User, collective_id: int):
    if crud_collective.get_collective(db, collective_id) is None:
        raise NotFoundError("Collective not found")
    member = crud_collective.get_member(db, collective_id, current_user.id)
    if member is None:
        log_security_event("collective_access", False, current_user.id, collective_id=collective_id)
        raise ForbiddenError("You are not a member of this collective")
    return member


def list_collective_channels(db: Session, current_user: User, collective_id: int) -> List[Conversation]:
    _require_collective_member(db, current_user, collective_id)
    channels = crud_conversation.get_collective_channels(db, collective_id)
    return [
        c for c in channels
        if not c.is_private or crud_conversation.get_participant(db, c.id, current_user.id) is not None
    ]


def create_collective_channel(db: Session, current_user: User, collective_id: int, channel_in: chat_schema.ChannelCreate) -> Conversation:
    member = _require_collective_member(db, current_user, collective_id)
    if member.role not in MANAGER_ROLES:
        log_security_event("create_channel", False, current_user.id, collective_id=collective_id, role=member.role)
        raise ForbiddenError("Only collective owners and admins can create channels")
    title = _validate_title(channel_in.title)
    if not title:
        raise ChatValidationError("Channel title is required")
    return crud_conversation.create_conversation(
        db,
        ConversationType.CHANNEL.value,
        [],
        creator_id=current_user.id,
        creator_role=ParticipantRole.ADMIN.value,
        title=title,
        description=channel_in.description,
        is_private=channel_in.is_private,
        collective_id=collective_id,
    )


def join_collective_channel(db: Session, current_user: User, collective_id: int, channel_id: int) -> Tuple[ConversationParticipant, bool]:
    """Collective members join its channels; owners and admins join as channel admins."""
    member = _require_collective_member(db, current_user, collective_id)
    channel = crud_conversation.get_conversation(db, channel_id)
    if channel is None or channel.collective_id != collective_id or channel.type != ConversationType.CHANNEL.value:
        raise NotFoundError("Channel not found")

    existing = crud_conversation.get_participant(db, channel_id, current_user.id)
    if existing is not None:
        return existing, False

    is_manager = member.role in MANAGER_ROLES
    if channel.is_private and not is_manager:
        log_security_event("join_channel", False, current_user.id, channel_id, reason="private")
        raise ForbiddenError("This channel is private")
    role = ParticipantRole.ADMIN.value if is_manager else ParticipantRole.MEMBER.value
    return crud_conversation.join_conversation(db, channel_id, current_user.id, role=role)
