from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from typing import Any, Dict, List, Literal, Optional
import datetime

ConversationTypeLiteral = Literal["direct", "group", "channel"]
ParticipantRoleLiteral = Literal["admin", "member"]
# "system" messages are server-generated only
ClientMessageTypeLiteral = Literal["text", "image", "file"]


# Schemas for reading/returning objects from the API
class UserInChat(BaseModel):
    id: int
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

class Participant(BaseModel):
    id: int
    conversation_id: int
    user_id: int
    role: str
    joined_at: datetime.datetime
    last_read_at: Optional[datetime.datetime] = None
    is_muted: bool = False
    is_pinned: bool = False
    user: Optional[UserInChat] = None

    model_config = ConfigDict(from_attributes=True)

class ReplyPreview(BaseModel):
    id: int
    content: Optional[str] = None
    sender: Optional[UserInChat] = None
    deleted_at: Optional[datetime.datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def hide_deleted_content(self):
        if self.deleted_at is not None:
            self.content = None
        return self

class MessageReaction(BaseModel):
    id: int
    message_id: int
    user_id: int
    emoji: str
    created_at: datetime.datetime

    model_config = ConfigDict(from_attributes=True)

class Message(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    content: str
    message_type: str
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("message_metadata", "metadata")
    )
    reply_to_id: Optional[int] = None
    created_at: datetime.datetime
    edited_at: Optional[datetime.datetime] = None
    deleted_at: Optional[datetime.datetime] = None
    sender: Optional[UserInChat] = None
    reply_to: Optional[ReplyPreview] = None
    reactions: List[MessageReaction] = []

    model_config = ConfigDict(from_attributes=True)

class Conversation(BaseModel):
    id: int
    type: str
    title: Optional[str] = None
    description: Optional[str] = None
    is_private: bool
    collective_id: Optional[int] = None
    created_by: Optional[int] = None
    created_at: datetime.datetime
    updated_at: Optional[datetime.datetime] = None
    last_message_at: Optional[datetime.datetime] = None
    participants: List[Participant] = []

    model_config = ConfigDict(from_attributes=True)

class ConversationSummary(Conversation):
    last_message: Optional[Message] = None
    unread_count: int = 0
    has_unread: bool = False


# Schemas for creating / updating objects
class ConversationCreate(BaseModel):
    type: ConversationTypeLiteral
    title: Optional[str] = None
    description: Optional[str] = None
    is_private: Optional[bool] = None
    participant_ids: List[int] = []

class ConversationUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    is_private: Optional[bool] = None

class DirectConversationCreate(BaseModel):
    recipient_id: int

class DirectConversationResponse(BaseModel):
    conversation_id: int
    created: bool

class ParticipantAdd(BaseModel):
    user_id: int
    role: ParticipantRoleLiteral = "member"

class ChannelCreate(BaseModel):
    title: str
    description: Optional[str] = None
    is_private: bool = False

class MessageCreate(BaseModel):
    content: str
    message_type: ClientMessageTypeLiteral = "text"
    metadata: Optional[Dict[str, Any]] = None
    reply_to_id: Optional[int] = None

class MessageUpdate(BaseModel):
    content: str

class MessageReactionCreate(BaseModel):
    emoji: str


# Unread tracking
class ConversationUnread(BaseModel):
    conversation_id: int
    unread_count: int
    has_unread: bool
    last_read_at: Optional[datetime.datetime] = None
    last_message_at: Optional[datetime.datetime] = None

class UnreadSummary(BaseModel):
    conversations: List[ConversationUnread] = []
    total_unread: int = 0

class MarkReadResponse(BaseModel):
    conversation_id: int
    last_read_at: datetime.datetime


# Search
class SearchResult(BaseModel):
    id: int
    content: str
    created_at: datetime.datetime
    conversation_id: int
    conversation_title: Optional[str] = None
    sender: Optional[UserInChat] = None
    reply_to: Optional[ReplyPreview] = None
    highlighted_content: Optional[str] = None

class SearchResponse(BaseModel):
    results: List[SearchResult]
    total: int
    query: str
    limit: int
    offset: int
    has_more: bool


class LinkPreview(BaseModel):
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
