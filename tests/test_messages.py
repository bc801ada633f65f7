import pytest

from app.core.exceptions import ChatValidationError, ForbiddenError, NotFoundError
from app.crud import crud_chat, crud_conversation
from app.models import Message, MessageReaction
from app.schemas import chat as chat_schema
from app.services import message_service
from app.services.realtime_bus import EventFilter
from conftest import security_for


def post(db, conversation_id, sender, content, **kwargs):
    return crud_chat.create_message(db, conversation_id, sender.id, chat_schema.MessageCreate(content=content, **kwargs))


def test_create_message_trims_and_advances_last_message_at(db, direct_conversation, alice):
    message = post(db, direct_conversation.id, alice, "  hello there  ")
    db.refresh(direct_conversation)

    assert message.content == "hello there"
    assert direct_conversation.last_message_at == message.created_at

def test_replying_leaves_read_position_alone(db, direct_conversation, alice, bob):
    for content in ("one", "two", "three"):
        post(db, direct_conversation.id, bob, content)

    post(db, direct_conversation.id, alice, "replying without reading")

    assert crud_conversation.get_participant(db, direct_conversation.id, alice.id).last_read_at is None
    assert crud_conversation.get_participant(db, direct_conversation.id, bob.id).last_read_at is None
    assert crud_chat.count_unread_messages(db, direct_conversation.id, alice.id, None) == 3
    assert crud_chat.count_unread_messages(db, direct_conversation.id, bob.id, None) == 1

@pytest.mark.parametrize("content", ["", "   ", "x" * 10001])
def test_create_message_rejects_bad_content(db, direct_conversation, alice, content):
    with pytest.raises(ChatValidationError):
        post(db, direct_conversation.id, alice, content)

    assert db.query(Message).count() == 0

def test_message_at_length_limit_is_accepted(db, direct_conversation, alice):
    message = post(db, direct_conversation.id, alice, "x" * 10000)
    assert len(message.content) == 10000

def test_reply_must_stay_in_conversation(db, direct_conversation, alice, bob, carol):
    other, _ = crud_conversation.get_or_create_direct_conversation(db, alice.id, carol.id)
    foreign = post(db, other.id, carol, "elsewhere")

    with pytest.raises(ChatValidationError):
        post(db, direct_conversation.id, alice, "reply", reply_to_id=foreign.id)

    parent = post(db, direct_conversation.id, bob, "original")
    reply = post(db, direct_conversation.id, alice, "reply", reply_to_id=parent.id)
    assert reply.reply_to.id == parent.id

def test_soft_delete_hides_message_but_keeps_row(db, direct_conversation, alice):
    message = post(db, direct_conversation.id, alice, "oops")
    db.refresh(direct_conversation)
    last_message_at = direct_conversation.last_message_at

    crud_chat.soft_delete_message(db, message)
    db.refresh(direct_conversation)

    assert crud_chat.get_conversation_messages(db, direct_conversation.id) == []
    assert crud_chat.get_conversation_message(db, direct_conversation.id, message.id) is None
    assert db.query(Message).filter(Message.id == message.id).one().deleted_at is not None
    assert direct_conversation.last_message_at == last_message_at

def test_list_messages_is_chronological(db, direct_conversation, alice, bob):
    first = post(db, direct_conversation.id, alice, "one")
    second = post(db, direct_conversation.id, bob, "two")
    third = post(db, direct_conversation.id, alice, "three")

    messages = crud_chat.get_conversation_messages(db, direct_conversation.id)

    assert [m.id for m in messages] == [first.id, second.id, third.id]

def test_count_unread_excludes_own_and_deleted(db, direct_conversation, alice, bob):
    post(db, direct_conversation.id, bob, "one")
    doomed = post(db, direct_conversation.id, bob, "two")
    post(db, direct_conversation.id, alice, "mine")
    crud_chat.soft_delete_message(db, doomed)

    assert crud_chat.count_unread_messages(db, direct_conversation.id, alice.id, None) == 1


# Reactions
def test_add_reaction_is_idempotent(db, direct_conversation, alice):
    message = post(db, direct_conversation.id, alice, "react to me")

    first, created = crud_chat.add_reaction(db, message.id, alice.id, "👍")
    second, created_again = crud_chat.add_reaction(db, message.id, alice.id, "👍")

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert db.query(MessageReaction).count() == 1

def test_reaction_toggle_round_trip(db, direct_conversation, alice):
    message = post(db, direct_conversation.id, alice, "react to me")

    crud_chat.add_reaction(db, message.id, alice.id, "🎉")
    assert crud_chat.remove_reaction(db, message.id, alice.id, "🎉") is True
    assert crud_chat.get_message_reactions(db, message.id) == []
    assert crud_chat.remove_reaction(db, message.id, alice.id, "🎉") is False

def test_reaction_emoji_length_is_limited(db, direct_conversation, alice):
    message = post(db, direct_conversation.id, alice, "react to me")

    with pytest.raises(ChatValidationError):
        crud_chat.add_reaction(db, message.id, alice.id, "x" * 33)


# Service layer: authorization and events
@pytest.mark.asyncio
async def test_non_participant_cannot_post(db, direct_conversation, carol, bus):
    with pytest.raises(ForbiddenError):
        await message_service.post_message(
            db, security_for(db, carol), carol, direct_conversation.id,
            chat_schema.MessageCreate(content="let me in"), bus=bus,
        )

    assert db.query(Message).count() == 0

@pytest.mark.asyncio
async def test_post_message_publishes_insert(db, direct_conversation, alice, bus):
    received = []

    async def on_change(change):
        received.append(change)

    await bus.subscribe("test-messages", [EventFilter("messages", "INSERT")], on_change)

    message = await message_service.post_message(
        db, security_for(db, alice), alice, direct_conversation.id,
        chat_schema.MessageCreate(content="hello"), bus=bus,
    )

    assert len(received) == 1
    assert received[0].new["id"] == message.id
    assert received[0].new["sender_id"] == alice.id
    assert received[0].new["created_at"] == message.created_at

@pytest.mark.asyncio
async def test_only_sender_edits(db, direct_conversation, alice, bob, bus):
    message = post(db, direct_conversation.id, alice, "draft")

    with pytest.raises(ForbiddenError):
        await message_service.edit_message(db, security_for(db, bob), direct_conversation.id, message.id, "hijack", bus=bus)

    edited = await message_service.edit_message(db, security_for(db, alice), direct_conversation.id, message.id, "final", bus=bus)
    assert edited.content == "final"
    assert edited.edited_at is not None

@pytest.mark.asyncio
async def test_deleted_message_cannot_be_edited(db, direct_conversation, alice, bus):
    message = post(db, direct_conversation.id, alice, "gone soon")
    await message_service.delete_message(db, security_for(db, alice), direct_conversation.id, message.id, bus=bus)

    with pytest.raises(NotFoundError):
        await message_service.edit_message(db, security_for(db, alice), direct_conversation.id, message.id, "back", bus=bus)

@pytest.mark.asyncio
async def test_only_sender_deletes(db, direct_conversation, alice, bob, bus):
    message = post(db, direct_conversation.id, alice, "mine")

    with pytest.raises(ForbiddenError):
        await message_service.delete_message(db, security_for(db, bob), direct_conversation.id, message.id, bus=bus)

@pytest.mark.asyncio
async def test_removing_missing_reaction_is_not_found(db, direct_conversation, alice):
    message = post(db, direct_conversation.id, alice, "no reactions")

    with pytest.raises(NotFoundError):
        await message_service.remove_reaction(db, security_for(db, alice), alice, direct_conversation.id, message.id, "👍")


# Search
def test_search_is_scoped_to_own_conversations(db, direct_conversation, alice, bob, carol):
    other, _ = crud_conversation.get_or_create_direct_conversation(db, bob.id, carol.id)
    post(db, direct_conversation.id, alice, "Quarterly Report draft")
    post(db, other.id, carol, "quarterly report for bob only")
    hidden = post(db, direct_conversation.id, bob, "quarterly report v2")
    crud_chat.soft_delete_message(db, hidden)

    response = message_service.search_messages(db, security_for(db, alice), alice, "quarterly")

    assert response.total == 1
    assert response.results[0].content == "Quarterly Report draft"
    assert response.results[0].highlighted_content == "<mark>Quarterly</mark> Report draft"
    assert response.has_more is False

def test_search_treats_wildcards_literally(db, direct_conversation, alice):
    post(db, direct_conversation.id, alice, "100% done")
    post(db, direct_conversation.id, alice, "1000 done")

    response = message_service.search_messages(db, security_for(db, alice), alice, "0%")

    assert [r.content for r in response.results] == ["100% done"]

@pytest.mark.parametrize("query,limit,offset", [("a", 50, 0), ("ok", 0, 0), ("ok", 101, 0), ("ok", 50, 10001)])
def test_search_bounds(db, alice, query, limit, offset):
    with pytest.raises(ChatValidationError):
        message_service.search_messages(db, security_for(db, alice), alice, query, limit=limit, offset=offset)

def test_search_in_foreign_conversation_is_forbidden(db, direct_conversation, carol):
    with pytest.raises(ForbiddenError):
        message_service.search_messages(db, security_for(db, carol), carol, "hello", conversation_id=direct_conversation.id)
