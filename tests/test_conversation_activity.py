import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from starlette.websockets import WebSocketState

from app.services.connection_manager import manager
from app.services.conversation_activity import ConversationActivity


@pytest_asyncio.fixture
async def sockets(alice, bob, carol):
    connected = {}
    for user in (alice, bob, carol):
        websocket = AsyncMock()
        websocket.client_state = WebSocketState.CONNECTED
        await manager.connect(websocket, str(user.id))
        connected[user.username] = websocket
    yield connected
    manager.active_connections.clear()
    manager.last_activity.clear()


def frames(websocket):
    return [json.loads(call.args[0]) for call in websocket.send_text.await_args_list]

def frame_types(websocket):
    return [frame["type"] for frame in frames(websocket)]


@pytest.mark.asyncio
async def test_typing_reaches_other_participants_and_stops_itself(session_factory, direct_conversation, alice, bob, sockets):
    activity = ConversationActivity(alice.id, session_factory, typing_timeout=0.01)

    assert await activity.start_typing(direct_conversation.id) is True
    assert frames(sockets["bob"])[0]["payload"]["user_id"] == alice.id
    assert frames(sockets["bob"])[0]["payload"]["conversation_id"] == direct_conversation.id

    await asyncio.sleep(0.05)

    assert frame_types(sockets["bob"]) == ["typing_start", "typing_stop"]
    assert frame_types(sockets["alice"]) == []
    assert frame_types(sockets["carol"]) == []
    assert activity.is_typing(direct_conversation.id) is False

@pytest.mark.asyncio
async def test_repeated_typing_restarts_the_timer(session_factory, direct_conversation, alice, sockets):
    activity = ConversationActivity(alice.id, session_factory, typing_timeout=0.2)

    await activity.start_typing(direct_conversation.id)
    await asyncio.sleep(0.12)
    await activity.start_typing(direct_conversation.id)
    await asyncio.sleep(0.12)

    # The first timer was replaced before it fired
    assert frame_types(sockets["bob"]) == ["typing_start", "typing_start"]
    await asyncio.sleep(0.2)
    assert frame_types(sockets["bob"]) == ["typing_start", "typing_start", "typing_stop"]

@pytest.mark.asyncio
async def test_explicit_stop_cancels_the_timer(session_factory, direct_conversation, alice, sockets):
    activity = ConversationActivity(alice.id, session_factory, typing_timeout=0.01)

    await activity.start_typing(direct_conversation.id)
    assert await activity.stop_typing(direct_conversation.id) is True
    await asyncio.sleep(0.05)

    assert frame_types(sockets["bob"]) == ["typing_start", "typing_stop"]
    assert await activity.stop_typing(direct_conversation.id) is False

@pytest.mark.asyncio
async def test_non_participant_cannot_broadcast(session_factory, direct_conversation, carol, sockets, caplog):
    activity = ConversationActivity(carol.id, session_factory)

    assert await activity.start_typing(direct_conversation.id) is False
    assert await activity.join(direct_conversation.id) is False

    assert frame_types(sockets["alice"]) == []
    assert frame_types(sockets["bob"]) == []
    assert "success=False" in caplog.text

@pytest.mark.asyncio
async def test_presence_join_is_announced_once(session_factory, direct_conversation, alice, sockets):
    activity = ConversationActivity(alice.id, session_factory)

    await activity.join(direct_conversation.id)
    await activity.join(direct_conversation.id)
    assert await activity.leave(direct_conversation.id) is True
    assert await activity.leave(direct_conversation.id) is False

    assert frame_types(sockets["bob"]) == ["user_join", "user_leave"]

@pytest.mark.asyncio
async def test_close_stops_typing_and_leaves(session_factory, direct_conversation, alice, sockets):
    activity = ConversationActivity(alice.id, session_factory)
    await activity.join(direct_conversation.id)
    await activity.start_typing(direct_conversation.id)

    await activity.close()

    assert frame_types(sockets["bob"]) == ["user_join", "typing_start", "typing_stop", "user_leave"]
    assert activity.is_present(direct_conversation.id) is False
    assert activity.is_typing(direct_conversation.id) is False
