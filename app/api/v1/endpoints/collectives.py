from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session
from typing import List

from app.core.auth import get_current_user
from app.core.dependencies import get_db
from app.models.user import User
from app.schemas import chat as chat_schema
from app.services import conversation_service

router = APIRouter()


@router.get("/{collective_id}/channels", response_model=List[chat_schema.Conversation])
def read_collective_channels(
    collective_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return conversation_service.list_collective_channels(db, current_user, collective_id)

@router.post("/{collective_id}/channels", response_model=chat_schema.Conversation, status_code=status.HTTP_201_CREATED)
def create_collective_channel(
    collective_id: int,
    channel_in: chat_schema.ChannelCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return conversation_service.create_collective_channel(db, current_user, collective_id, channel_in)

@router.post("/{collective_id}/channels/{channel_id}/join", response_model=chat_schema.Participant)
def join_collective_channel(
    collective_id: int,
    channel_id: int,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    participant, created = conversation_service.join_collective_channel(db, current_user, collective_id, channel_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return participant
