from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, JSON, Index
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow
import enum

class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"

class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default=MessageType.TEXT.value)

    # Structured side data, e.g. {"link_preview": {...}}. "metadata" is reserved on declarative classes.
    message_metadata = Column("metadata", JSON, nullable=True)

    # Flat, one-level reply to a message of the same conversation
    reply_to_id = Column(Integer, ForeignKey("messages.id"), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    edited_at = Column(DateTime, nullable=True)
    # Soft delete: the row stays, normal reads filter it out
    deleted_at = Column(DateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", back_populates="sent_messages")
    reactions = relationship("MessageReaction", back_populates="message", cascade="all, delete-orphan")
    reply_to = relationship("Message", remote_side=[id], foreign_keys=[reply_to_id])

    __table_args__ = (
        Index('ix_messages_conversation_created', 'conversation_id', 'created_at'),
    )
