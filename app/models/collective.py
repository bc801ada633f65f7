from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow
import enum

class CollectiveRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    EDITOR = "editor"
    AUTHOR = "author"
    MEMBER = "member"

# Collective roles that manage channels and become channel admins on join
MANAGER_ROLES = {CollectiveRole.OWNER.value, CollectiveRole.ADMIN.value}

class Collective(Base):
    __tablename__ = "collectives"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    owner = relationship("User")
    members = relationship("CollectiveMember", back_populates="collective", cascade="all, delete-orphan")
    conversations = relationship("Conversation", back_populates="collective")

class CollectiveMember(Base):
    __tablename__ = "collective_members"

    id = Column(Integer, primary_key=True, index=True)
    collective_id = Column(Integer, ForeignKey("collectives.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(String, nullable=False, default=CollectiveRole.MEMBER.value)
    joined_at = Column(DateTime, default=utcnow)

    collective = relationship("Collective", back_populates="members")
    user = relationship("User", back_populates="collective_memberships")

    __table_args__ = (
        UniqueConstraint('collective_id', 'user_id', name='unique_collective_member'),
    )
