import os

# Must be set before the app (and its settings / engine) is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LINK_PREVIEW_ENABLED", "false")
os.environ.setdefault("WS_ENABLE_HEARTBEAT", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.database import Base
from app.core.dependencies import get_db, get_session_factory
from app.core.realtime import get_bus, get_registry
from app.crud import crud_collective, crud_conversation
from app.main import app
from app.schemas.user import UserCreate
from app.services import user_service
from app.services.chat_security import ChatSecurity
from app.services.connection_manager import manager
from app.services.realtime_bus import RealtimeBus
from app.services.subscription_registry import SubscriptionRegistry

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)

@pytest.fixture
def session_factory(db):
    return TestingSessionLocal

@pytest.fixture
def bus():
    return RealtimeBus()

@pytest.fixture
def registry(bus):
    return SubscriptionRegistry(bus)

@pytest.fixture
def client(db, bus, registry):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_bus] = lambda: bus
    app.dependency_overrides[get_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()
    manager.active_connections.clear()
    manager.last_activity.clear()


def make_user(db, name: str, is_active: bool = True):
    user = user_service.create_user(db, UserCreate(email=f"{name}@example.com", username=name, full_name=name.title()))
    if not is_active:
        user.is_active = False
        db.commit()
        db.refresh(user)
    return user

@pytest.fixture
def alice(db):
    return make_user(db, "alice")

@pytest.fixture
def bob(db):
    return make_user(db, "bob")

@pytest.fixture
def carol(db):
    return make_user(db, "carol")

def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.email)}"}

def security_for(db, user):
    return ChatSecurity(db, lambda: user)

@pytest.fixture
def direct_conversation(db, alice, bob):
    conversation, _ = crud_conversation.get_or_create_direct_conversation(db, alice.id, bob.id)
    return conversation

@pytest.fixture
def collective(db, alice):
    return crud_collective.create_collective(db, name="Night Owls", slug="night-owls", owner_id=alice.id)
