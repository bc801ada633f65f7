from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow
import enum

class ParticipantRole(str, enum.Enum):
    ADMIN = "admin"
    MEMBER = "member"

class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False, default=ParticipantRole.MEMBER.value)
    joined_at = Column(DateTime, default=utcnow)
    # NULL means the participant has never read the conversation
    last_read_at = Column(DateTime, nullable=True)
    is_muted = Column(Boolean, nullable=False, default=False)
    is_pinned = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="conversation_participations")
    conversation = relationship("Conversation", back_populates="participants")

    __table_args__ = (
        UniqueConstraint('conversation_id', 'user_id', name='unique_conversation_participant'),
    )
