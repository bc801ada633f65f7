from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.dependencies import get_db
from app.api.v1.endpoints import chat, collectives


api_router = APIRouter()


@api_router.get("/health", tags=["health"])
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}

api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(collectives.router, prefix="/collectives", tags=["collectives"])
