from typing import Optional

from sqlalchemy.orm import Session

from app.models import Collective, CollectiveMember
from app.models.collective import CollectiveRole


def get_collective(db: Session, collective_id: int) -> Optional[Collective]:
    return db.query(Collective).filter(Collective.id == collective_id).first()

def create_collective(db: Session, name: str, slug: str, owner_id: int) -> Collective:
    db_collective = Collective(name=name, slug=slug, owner_id=owner_id)
    db.add(db_collective)
    db.commit()
    db.refresh(db_collective)
    # The owner is always a member
    add_member(db, db_collective.id, owner_id, CollectiveRole.OWNER.value)
    return db_collective

def get_member(db: Session, collective_id: int, user_id: int) -> Optional[CollectiveMember]:
    return db.query(CollectiveMember).filter(
        CollectiveMember.collective_id == collective_id,
        CollectiveMember.user_id == user_id
    ).first()

def add_member(db: Session, collective_id: int, user_id: int, role: str = CollectiveRole.MEMBER.value) -> CollectiveMember:
    existing = get_member(db, collective_id, user_id)
    if existing:
        return existing
    db_member = CollectiveMember(collective_id=collective_id, user_id=user_id, role=role)
    db.add(db_member)
    db.commit()
    db.refresh(db_member)
    return db_member
