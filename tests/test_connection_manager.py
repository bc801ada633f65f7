import time
from unittest.mock import AsyncMock

import pytest
from starlette.websockets import WebSocketState

from app.core.config import settings
from app.services.connection_manager import ConnectionManager
from app.services.websocket_cleanup_service import cleanup_inactive_sessions


def fake_socket():
    websocket = AsyncMock()
    websocket.client_state = WebSocketState.CONNECTED
    return websocket


@pytest.mark.asyncio
async def test_send_reaches_every_tab_of_each_user():
    manager = ConnectionManager()
    first_tab, second_tab, other = fake_socket(), fake_socket(), fake_socket()
    await manager.connect(first_tab, "1")
    await manager.connect(second_tab, "1")
    await manager.connect(other, "2")

    await manager.send_to_users([1, 1], {"type": "new_message"})

    first_tab.send_text.assert_awaited_once_with('{"type": "new_message"}')
    second_tab.send_text.assert_awaited_once()
    other.send_text.assert_not_awaited()

@pytest.mark.asyncio
async def test_failed_socket_is_dropped():
    manager = ConnectionManager()
    broken, healthy = fake_socket(), fake_socket()
    broken.send_text.side_effect = RuntimeError("socket closed")
    await manager.connect(broken, "1")
    await manager.connect(healthy, "1")

    assert await manager.broadcast("hello", "1") == 1
    assert [c["websocket"] for c in manager.active_connections["1"]] == [healthy]

@pytest.mark.asyncio
async def test_disconnect_forgets_user():
    manager = ConnectionManager()
    websocket = fake_socket()
    await manager.connect(websocket, "1")

    manager.disconnect(websocket, "1")

    assert not manager.has_connection("1")
    assert "1" not in manager.last_activity

@pytest.mark.asyncio
async def test_cleanup_closes_idle_sockets():
    manager = ConnectionManager()
    idle, active = fake_socket(), fake_socket()
    await manager.connect(idle, "1")
    await manager.connect(active, "2")
    manager.last_activity["1"][id(idle)] = time.time() - settings.WS_SESSION_TIMEOUT - 5

    await cleanup_inactive_sessions(manager)

    idle.close.assert_awaited_once()
    active.close.assert_not_awaited()
    assert not manager.has_connection("1")
    assert manager.has_connection("2")
