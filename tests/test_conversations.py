import pytest
from unittest.mock import patch
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import ChatError, ChatValidationError, ForbiddenError, NotFoundError
from app.crud import crud_collective, crud_conversation
from app.models import Conversation, ConversationParticipant
from app.schemas import chat as chat_schema
from app.services import conversation_service
from conftest import make_user, security_for


def test_create_group_adds_creator_as_admin(db, alice, bob, carol):
    conversation = crud_conversation.create_conversation(
        db, "group", [bob.id, carol.id, bob.id], creator_id=alice.id, title="Editors"
    )

    participants = {p.user_id: p.role for p in crud_conversation.get_participants(db, conversation.id)}
    assert participants == {alice.id: "admin", bob.id: "member", carol.id: "member"}
    assert conversation.is_private is True
    assert conversation.last_message_at is None

def test_create_conversation_rejects_unknown_participants(db, alice):
    with pytest.raises(ChatValidationError) as exc_info:
        crud_conversation.create_conversation(db, "group", [alice.id, 9999], creator_id=alice.id)

    assert "9999" in exc_info.value.detail
    assert db.query(Conversation).count() == 0

def test_create_conversation_rejects_inactive_participants(db, alice):
    dormant = make_user(db, "dormant", is_active=False)

    with pytest.raises(ChatValidationError):
        crud_conversation.create_conversation(db, "group", [dormant.id], creator_id=alice.id)

def test_create_conversation_requires_a_participant(db):
    with pytest.raises(ChatValidationError):
        crud_conversation.create_conversation(db, "group", [])

def test_direct_conversation_needs_exactly_two_participants(db, alice, bob, carol):
    with pytest.raises(ChatValidationError):
        crud_conversation.create_conversation(db, "direct", [bob.id, carol.id], creator_id=alice.id)

def test_failed_participant_insert_leaves_no_conversation(db, alice, bob):
    with patch.object(crud_conversation, "_add_participants", side_effect=SQLAlchemyError("disk full")):
        with pytest.raises(ChatError):
            crud_conversation.create_conversation(db, "group", [bob.id], creator_id=alice.id)

    assert db.query(Conversation).count() == 0
    assert db.query(ConversationParticipant).count() == 0

def test_get_or_create_direct_is_idempotent(db, alice, bob):
    first, created = crud_conversation.get_or_create_direct_conversation(db, alice.id, bob.id)
    again, created_again = crud_conversation.get_or_create_direct_conversation(db, bob.id, alice.id)

    assert created is True
    assert created_again is False
    assert first.id == again.id
    assert db.query(Conversation).filter(Conversation.type == "direct").count() == 1

def test_direct_conversation_with_self_is_rejected(db, alice):
    with pytest.raises(ChatValidationError):
        crud_conversation.get_or_create_direct_conversation(db, alice.id, alice.id)

def test_join_is_idempotent(db, alice, bob):
    conversation = crud_conversation.create_conversation(db, "channel", [], creator_id=alice.id, title="general")

    first, created = crud_conversation.join_conversation(db, conversation.id, bob.id)
    second, created_again = crud_conversation.join_conversation(db, conversation.id, bob.id)

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert db.query(ConversationParticipant).filter(
        ConversationParticipant.conversation_id == conversation.id,
        ConversationParticipant.user_id == bob.id,
    ).count() == 1

def test_leave_conversation(db, direct_conversation, bob):
    assert crud_conversation.leave_conversation(db, direct_conversation.id, bob.id) is True
    assert crud_conversation.get_participant(db, direct_conversation.id, bob.id) is None
    assert crud_conversation.leave_conversation(db, direct_conversation.id, bob.id) is False

def test_mark_read_never_moves_backwards(db, direct_conversation, bob):
    participant = crud_conversation.mark_conversation_read(db, direct_conversation.id, bob.id)
    first_read = participant.last_read_at

    earlier = first_read.replace(year=first_read.year - 1)
    participant = crud_conversation.mark_conversation_read(db, direct_conversation.id, bob.id, read_at=earlier)

    assert participant.last_read_at == first_read


# Service-level rules
def test_service_direct_requires_exactly_one_other(db, alice, bob, carol):
    security = security_for(db, alice)
    with pytest.raises(ChatValidationError):
        conversation_service.create_conversation(
            db, security, alice, chat_schema.ConversationCreate(type="direct", participant_ids=[bob.id, carol.id])
        )

def test_service_group_requires_other_participants(db, alice):
    security = security_for(db, alice)
    with pytest.raises(ChatValidationError):
        conversation_service.create_conversation(
            db, security, alice, chat_schema.ConversationCreate(type="group", participant_ids=[alice.id])
        )

def test_service_title_length_is_enforced(db, alice, bob):
    security = security_for(db, alice)
    with pytest.raises(ChatValidationError):
        conversation_service.create_conversation(
            db, security, alice,
            chat_schema.ConversationCreate(type="group", title="x" * 101, participant_ids=[bob.id]),
        )

def test_only_admins_add_participants(db, alice, bob, carol):
    conversation = crud_conversation.create_conversation(db, "group", [bob.id], creator_id=alice.id)

    with pytest.raises(ForbiddenError):
        conversation_service.add_participant(
            db, security_for(db, bob), conversation.id, chat_schema.ParticipantAdd(user_id=carol.id)
        )

    participant, created = conversation_service.add_participant(
        db, security_for(db, alice), conversation.id, chat_schema.ParticipantAdd(user_id=carol.id)
    )
    assert created is True
    assert participant.role == "member"

def test_non_participant_cannot_see_conversation(db, direct_conversation, carol):
    with pytest.raises(NotFoundError):
        conversation_service.get_visible_conversation(db, security_for(db, carol), direct_conversation.id)

def test_private_channel_cannot_be_self_joined(db, alice, bob):
    channel = crud_conversation.create_conversation(db, "channel", [], creator_id=alice.id, title="secret", is_private=True)

    with pytest.raises(ForbiddenError):
        conversation_service.join_conversation(db, bob, channel.id)

def test_group_conversation_cannot_be_self_joined(db, alice, bob, carol):
    group = crud_conversation.create_conversation(db, "group", [bob.id], creator_id=alice.id)

    with pytest.raises(NotFoundError):
        conversation_service.join_conversation(db, carol, group.id)


# Collective channels
def test_collective_member_joins_channel_as_member(db, collective, alice, bob):
    crud_collective.add_member(db, collective.id, bob.id, "author")
    channel = conversation_service.create_collective_channel(
        db, alice, collective.id, chat_schema.ChannelCreate(title="announcements")
    )

    participant, created = conversation_service.join_collective_channel(db, bob, collective.id, channel.id)
    again, created_again = conversation_service.join_collective_channel(db, bob, collective.id, channel.id)

    assert created is True
    assert created_again is False
    assert participant.role == "member"
    assert again.id == participant.id

def test_collective_admin_joins_channel_as_admin(db, collective, alice, bob):
    crud_collective.add_member(db, collective.id, bob.id, "admin")
    channel = conversation_service.create_collective_channel(
        db, alice, collective.id, chat_schema.ChannelCreate(title="staff", is_private=True)
    )

    participant, _ = conversation_service.join_collective_channel(db, bob, collective.id, channel.id)

    assert participant.role == "admin"

def test_non_member_cannot_join_collective_channel(db, collective, alice, carol):
    channel = conversation_service.create_collective_channel(
        db, alice, collective.id, chat_schema.ChannelCreate(title="general")
    )

    with pytest.raises(ForbiddenError):
        conversation_service.join_collective_channel(db, carol, collective.id, channel.id)

def test_only_managers_create_collective_channels(db, collective, bob):
    crud_collective.add_member(db, collective.id, bob.id, "editor")

    with pytest.raises(ForbiddenError):
        conversation_service.create_collective_channel(
            db, bob, collective.id, chat_schema.ChannelCreate(title="mine")
        )
