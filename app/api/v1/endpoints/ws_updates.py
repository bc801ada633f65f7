from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from typing import Optional
import json
import logging

from app.core.auth import get_user_from_token
from app.core.dependencies import get_session_factory
from app.core.realtime import get_bus, get_registry
from app.models import user as models_user
from app.schemas.websockets import WebSocketMessage
from app.services import conversation_service
from app.services.conversation_activity import ConversationActivity
from app.services.connection_manager import manager
from app.services.realtime_bus import RealtimeBus
from app.services.subscription_registry import SubscriptionRegistry
from app.services.unread_realtime_sync import UnreadRealtimeSync
from app.services.unread_tracker import SqlUnreadDataSource, UnreadTracker

logger = logging.getLogger(__name__)

router = APIRouter()

# Client frame -> ConversationActivity method
ACTIVITY_FRAMES = {
    "typing_start": "start_typing",
    "typing_stop": "stop_typing",
    "join_conversation": "join",
    "leave_conversation": "leave",
}

async def authenticate_websocket_user(websocket: WebSocket, token: Optional[str], session_factory) -> Optional[models_user.User]:
    """Authenticate user for WebSocket connection without holding DB session. Returns None if auth fails."""
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication token missing")
        return None

    db = session_factory()
    try:
        return get_user_from_token(db, token)
    except Exception as e:
        logger.info(f"[ws_updates] Rejected websocket: {getattr(e, 'detail', e)}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Could not validate credentials")
        return None
    finally:
        db.close()

async def _send(websocket: WebSocket, event_type: str, payload=None):
    await websocket.send_text(WebSocketMessage(type=event_type, payload=jsonable_encoder(payload)).model_dump_json())

@router.websocket("/chat")
async def chat_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    session_factory=Depends(get_session_factory),
    bus: RealtimeBus = Depends(get_bus),
    registry: SubscriptionRegistry = Depends(get_registry),
):
    """
    Per-user chat socket.

    Server frames: ``unread_update``, ``new_message``, ``message_updated``,
    ``reaction_added``, ``reaction_removed``, ``typing_start``, ``typing_stop``,
    ``user_join``, ``user_leave``, ``pong``, ``error``.
    Client frames: ``ping``, plus ``mark_read``, ``typing_start``, ``typing_stop``,
    ``join_conversation`` and ``leave_conversation``, each carrying
    ``{"payload": {"conversation_id": ...}}``.
    """
    current_user = await authenticate_websocket_user(websocket, token, session_factory)
    if not current_user:
        return

    user_key = str(current_user.id)
    await manager.connect(websocket, user_key, "user")

    async def mark_read(db, conversation_id, user_id):
        return await conversation_service.mark_conversation_read(db, conversation_id, user_id, bus=bus)

    tracker = UnreadTracker(current_user.id, SqlUnreadDataSource(session_factory, mark_read_func=mark_read))
    sync = UnreadRealtimeSync(registry, tracker)

    async def push_unread(summary):
        await _send(websocket, "unread_update", summary)

    tracker.add_listener(push_unread)
    activity = ConversationActivity(current_user.id, session_factory)

    try:
        # Subscribe before seeding so nothing committed in between is missed
        await sync.start()
        await tracker.initialize()

        while True:
            data = await websocket.receive_text()
            manager.update_activity(user_key, websocket)
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"[ws_updates] Non-JSON frame from user {user_key}: {data[:100]}")
                continue
            if not isinstance(message, dict):
                continue

            frame_type = message.get("type")
            if frame_type == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
                continue

            payload = message.get("payload") or {}
            conversation_id = payload.get("conversation_id", message.get("conversation_id"))
            if frame_type == "mark_read":
                try:
                    await tracker.mark_conversation_read(int(conversation_id))
                except Exception as e:
                    logger.warning(f"[ws_updates] mark_read failed for user {user_key}: {e}")
                    await _send(websocket, "error", {"detail": "Failed to mark conversation as read", "conversation_id": conversation_id})
            elif frame_type in ACTIVITY_FRAMES:
                try:
                    conversation_id = int(conversation_id)
                except (TypeError, ValueError):
                    await _send(websocket, "error", {"detail": "conversation_id is required"})
                    continue
                if not await getattr(activity, ACTIVITY_FRAMES[frame_type])(conversation_id):
                    if frame_type in ("typing_start", "join_conversation"):
                        await _send(websocket, "error", {"detail": "You are not a participant in this conversation", "conversation_id": conversation_id})
    except WebSocketDisconnect:
        logger.info(f"[ws_updates] User {user_key} disconnected")
    except Exception as e:
        logger.error(f"[ws_updates] Error in chat websocket for user {user_key}: {e}")
    finally:
        manager.disconnect(websocket, user_key)
        await sync.stop()
        await activity.close()
