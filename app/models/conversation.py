from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Text
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow
import enum

class ConversationType(str, enum.Enum):
    DIRECT = "direct"
    GROUP = "group"
    CHANNEL = "channel"

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(20), nullable=False, index=True)
    title = Column(String, nullable=True) # Nullable for direct conversations
    description = Column(Text, nullable=True)
    is_private = Column(Boolean, nullable=False, default=True)

    collective_id = Column(Integer, ForeignKey("collectives.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    # Denormalized copy of the newest message's created_at, compared against last_read_at
    last_message_at = Column(DateTime, nullable=True, index=True)

    collective = relationship("Collective", back_populates="conversations")
    creator = relationship("User")

    participants = relationship("ConversationParticipant", back_populates="conversation", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")
