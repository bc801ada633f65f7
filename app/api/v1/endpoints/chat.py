from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.auth import get_chat_security, get_current_user
from app.core.config import settings
from app.core.dependencies import get_db, get_session_factory
from app.core.exceptions import ForbiddenError, NotFoundError
from app.core.realtime import get_bus
from app.models.user import User
from app.schemas import chat as chat_schema
from app.services import conversation_service, message_service
from app.services.chat_security import ChatSecurity
from app.services.realtime_bus import RealtimeBus
from app.services.unread_tracker import SqlUnreadDataSource, UnreadTracker

router = APIRouter()


# Conversations
@router.get("/conversations", response_model=List[chat_schema.ConversationSummary])
def read_conversations(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return conversation_service.list_conversations(db, current_user)

@router.post("/conversations", response_model=chat_schema.Conversation, status_code=status.HTTP_201_CREATED)
def create_conversation(
    conversation_in: chat_schema.ConversationCreate,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    conversation, created = conversation_service.create_conversation(db, security, current_user, conversation_in)
    if not created:
        response.status_code = status.HTTP_200_OK
    return conversation

@router.post("/direct", response_model=chat_schema.DirectConversationResponse, status_code=status.HTTP_201_CREATED)
def get_or_create_direct_conversation(
    direct_in: chat_schema.DirectConversationCreate,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    conversation, created = conversation_service.get_or_create_direct_conversation(db, security, current_user, direct_in.recipient_id)
    if not created:
        response.status_code = status.HTTP_200_OK
    return chat_schema.DirectConversationResponse(conversation_id=conversation.id, created=created)

@router.get("/conversations/{conversation_id}", response_model=chat_schema.Conversation)
def read_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    return conversation_service.get_visible_conversation(db, security, conversation_id)

@router.patch("/conversations/{conversation_id}", response_model=chat_schema.Conversation)
def update_conversation(
    conversation_id: int,
    conversation_in: chat_schema.ConversationUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    return conversation_service.update_conversation(db, security, conversation_id, conversation_in)

@router.post("/conversations/{conversation_id}/join", response_model=chat_schema.Participant)
def join_conversation(
    conversation_id: int,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    participant, created = conversation_service.join_conversation(db, current_user, conversation_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return participant

@router.post("/conversations/{conversation_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conversation_service.leave_conversation(db, current_user, conversation_id)

@router.post("/conversations/{conversation_id}/participants", response_model=chat_schema.Participant)
def add_participant(
    conversation_id: int,
    participant_in: chat_schema.ParticipantAdd,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    participant, created = conversation_service.add_participant(db, security, conversation_id, participant_in)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return participant

@router.delete("/conversations/{conversation_id}/participants/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_participant(
    conversation_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    conversation_service.remove_participant(db, security, conversation_id, user_id)


# Messages
@router.get("/conversations/{conversation_id}/messages", response_model=List[chat_schema.Message])
def read_messages(
    conversation_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(settings.DEFAULT_MESSAGE_LIMIT, ge=1, le=settings.MAX_MESSAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    return message_service.list_messages(db, security, conversation_id, skip=skip, limit=limit)

@router.post("/conversations/{conversation_id}/messages", response_model=chat_schema.Message, status_code=status.HTTP_201_CREATED)
async def create_message(
    conversation_id: int,
    message_in: chat_schema.MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
    bus: RealtimeBus = Depends(get_bus),
    session_factory=Depends(get_session_factory),
):
    return await message_service.post_message(
        db, security, current_user, conversation_id, message_in, bus=bus, session_factory=session_factory
    )

@router.patch("/conversations/{conversation_id}/messages/{message_id}", response_model=chat_schema.Message)
async def edit_message(
    conversation_id: int,
    message_id: int,
    message_in: chat_schema.MessageUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
    bus: RealtimeBus = Depends(get_bus),
):
    return await message_service.edit_message(db, security, conversation_id, message_id, message_in.content, bus=bus)

@router.delete("/conversations/{conversation_id}/messages/{message_id}")
async def delete_message(
    conversation_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
    bus: RealtimeBus = Depends(get_bus),
):
    message = await message_service.delete_message(db, security, conversation_id, message_id, bus=bus)
    return {"ok": True, "id": message.id, "deleted_at": message.deleted_at}


# Reactions
@router.get("/conversations/{conversation_id}/messages/{message_id}/reactions", response_model=List[chat_schema.MessageReaction])
def read_reactions(
    conversation_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    return message_service.list_reactions(db, security, conversation_id, message_id)

@router.post("/conversations/{conversation_id}/messages/{message_id}/reactions", response_model=chat_schema.MessageReaction, status_code=status.HTTP_201_CREATED)
async def add_reaction(
    conversation_id: int,
    message_id: int,
    reaction_in: chat_schema.MessageReactionCreate,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    """Add a reaction. Adding the same emoji twice returns the existing reaction."""
    reaction, created = await message_service.add_reaction(db, security, current_user, conversation_id, message_id, reaction_in.emoji)
    if not created:
        response.status_code = status.HTTP_200_OK
    return reaction

@router.delete("/conversations/{conversation_id}/messages/{message_id}/reactions")
async def remove_reaction(
    conversation_id: int,
    message_id: int,
    emoji: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    await message_service.remove_reaction(db, security, current_user, conversation_id, message_id, emoji)
    return {"ok": True}


# Read state
@router.post("/conversations/{conversation_id}/read", response_model=chat_schema.MarkReadResponse)
async def mark_conversation_read(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
    bus: RealtimeBus = Depends(get_bus),
):
    if not security.can_view_conversation(conversation_id):
        raise ForbiddenError("You are not a participant in this conversation")
    participant = await conversation_service.mark_conversation_read(db, conversation_id, current_user.id, bus=bus)
    if participant is None:
        # Left between the check and the write
        raise NotFoundError("Conversation not found")
    return chat_schema.MarkReadResponse(conversation_id=conversation_id, last_read_at=participant.last_read_at)

@router.get("/unread", response_model=chat_schema.UnreadSummary)
async def read_unread_summary(
    current_user: User = Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    """Unread counts for the caller's direct conversations."""
    tracker = UnreadTracker(current_user.id, SqlUnreadDataSource(session_factory))
    try:
        return await tracker.initialize()
    finally:
        tracker.close()


# Search
@router.get("/search", response_model=chat_schema.SearchResponse)
def search_messages(
    q: str,
    conversation_id: Optional[int] = None,
    limit: int = settings.SEARCH_DEFAULT_LIMIT,
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    security: ChatSecurity = Depends(get_chat_security),
):
    return message_service.search_messages(
        db, security, current_user, q, conversation_id=conversation_id, limit=limit, offset=offset
    )
