from typing import Iterable, List
from sqlalchemy.orm import Session
from app.models import user as models_user
from app.schemas import user as schemas_user

def get_user_by_email(db: Session, email: str):
    return db.query(models_user.User).filter(models_user.User.email == email).first()

def get_active_users_by_ids(db: Session, user_ids: Iterable[int]) -> List[models_user.User]:
    ids = list(set(user_ids))
    if not ids:
        return []
    return db.query(models_user.User).filter(
        models_user.User.id.in_(ids),
        models_user.User.is_active == True
    ).all()

def create_user(db: Session, user: schemas_user.UserCreate):
    db_user = models_user.User(**user.model_dump(), is_active=True)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user
