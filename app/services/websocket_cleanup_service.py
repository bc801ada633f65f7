"""
WebSocket Cleanup Service

Periodically closes chat sockets that stopped pinging.
"""

import logging

from starlette.websockets import WebSocketState

from app.services.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


async def cleanup_inactive_sessions(manager: ConnectionManager):
    """Called by APScheduler every WS_CLEANUP_INTERVAL seconds."""
    try:
        inactive_connections = manager.get_inactive_connections()
        if not inactive_connections:
            logger.debug("No inactive connections to clean up")
            return

        logger.info(f"Found {len(inactive_connections)} inactive connections to clean up")
        for user_key, websocket, idle_time in inactive_connections:
            try:
                if getattr(websocket, "client_state", WebSocketState.CONNECTED) == WebSocketState.CONNECTED:
                    await websocket.close(code=1000, reason=f"Session timeout after {idle_time:.0f}s of inactivity")
            except Exception as close_error:
                logger.debug(f"WebSocket already closed for user {user_key}: {close_error}")
            # Clean up from manager even if close failed
            manager.disconnect(websocket, user_key)
    except Exception as e:
        logger.error(f"Error in cleanup_inactive_sessions: {e}")
