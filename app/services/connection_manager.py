import json
import logging
import time
from typing import Any, Dict, Iterable, List, Tuple

from fastapi import WebSocket

from app.core.config import settings

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Open chat sockets, grouped per user (one user may hold several tabs)."""

    def __init__(self):
        self.active_connections: Dict[str, List[Dict[str, Any]]] = {}
        # Track last activity timestamp for each websocket: {user_key: {websocket_id: timestamp}}
        self.last_activity: Dict[str, Dict[int, float]] = {}

    async def connect(self, websocket: WebSocket, user_key: str, client_type: str = "user"):
        await websocket.accept()
        if user_key not in self.active_connections:
            self.active_connections[user_key] = []
            self.last_activity[user_key] = {}

        self.active_connections[user_key].append({"websocket": websocket, "client_type": client_type})
        self.last_activity[user_key][id(websocket)] = time.time()

        logger.info(f"[ConnectionManager] Connected {client_type} for user {user_key}. Connections: {len(self.active_connections[user_key])}")

    def disconnect(self, websocket: WebSocket, user_key: str):
        if user_key not in self.active_connections:
            logger.debug(f"[ConnectionManager] User {user_key} not found in active connections")
            return
        connection_to_remove = next((c for c in self.active_connections[user_key] if c["websocket"] == websocket), None)
        if connection_to_remove:
            self.active_connections[user_key].remove(connection_to_remove)
            self.last_activity.get(user_key, {}).pop(id(websocket), None)
            logger.info(f"[ConnectionManager] Disconnected user {user_key}. Remaining: {len(self.active_connections[user_key])}")
        if not self.active_connections[user_key]:
            del self.active_connections[user_key]
            self.last_activity.pop(user_key, None)

    async def broadcast(self, message: str, user_key: str) -> int:
        """Send ``message`` to every socket of one user; returns the number of successful sends."""
        if user_key not in self.active_connections:
            return 0

        sent = 0
        # Track connections that fail so we can remove them after iteration
        failed_connections = []
        for connection in self.active_connections[user_key]:
            try:
                await connection["websocket"].send_text(message)
                sent += 1
            except Exception as e:
                logger.warning(f"[ConnectionManager] Failed to send to user {user_key}: {e}")
                failed_connections.append(connection)

        for failed_conn in failed_connections:
            try:
                self.active_connections[user_key].remove(failed_conn)
            except ValueError:
                pass  # Already removed

        if user_key in self.active_connections and not self.active_connections[user_key]:
            del self.active_connections[user_key]
            self.last_activity.pop(user_key, None)
        return sent

    async def send_to_users(self, user_ids: Iterable[int], message: Any):
        if not isinstance(message, str):
            message = json.dumps(message, default=str)
        for user_id in set(user_ids):
            await self.broadcast(message, str(user_id))

    async def disconnect_all(self):
        logger.info("[ConnectionManager] Disconnecting all clients...")
        for user_key in list(self.active_connections.keys()):
            for connection in self.active_connections[user_key]:
                try:
                    await connection["websocket"].close(code=1000)
                except Exception as e:
                    logger.debug(f"[ConnectionManager] Error closing websocket for user {user_key}: {e}")
        self.active_connections.clear()
        self.last_activity.clear()

    def has_connection(self, user_key: str) -> bool:
        return bool(self.active_connections.get(user_key))

    def update_activity(self, user_key: str, websocket: WebSocket):
        if user_key in self.last_activity:
            self.last_activity[user_key][id(websocket)] = time.time()

    def get_inactive_connections(self) -> List[Tuple[str, WebSocket, float]]:
        """(user_key, websocket, idle_time) for connections idle longer than WS_SESSION_TIMEOUT."""
        current_time = time.time()
        inactive = []
        for user_key in list(self.active_connections.keys()):
            activity = self.last_activity.get(user_key, {})
            for connection in self.active_connections[user_key]:
                last_seen = activity.get(id(connection["websocket"]), current_time)
                idle_time = current_time - last_seen
                if idle_time > settings.WS_SESSION_TIMEOUT:
                    inactive.append((user_key, connection["websocket"], idle_time))
        return inactive

manager = ConnectionManager()
