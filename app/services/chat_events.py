"""
Post-commit fan-out of chat changes.

Every successful write publishes a row change on the realtime bus (consumed
by unread tracking) and pushes a typed frame to the connected sockets of the
conversation's participants.
"""
import logging
from typing import Any, Dict, Iterable, Optional

from fastapi.encoders import jsonable_encoder

from app.models import ConversationParticipant, Message
from app.schemas.websockets import WebSocketMessage
from app.services.connection_manager import manager
from app.services.realtime_bus import ChangeEvent, RealtimeBus

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
PARTICIPANTS_TABLE = "conversation_participants"


def message_record(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        # Deleted content never leaves the database
        "content": None if message.deleted_at else message.content,
        "message_type": message.message_type,
        "metadata": None if message.deleted_at else message.message_metadata,
        "reply_to_id": message.reply_to_id,
        "created_at": message.created_at,
        "edited_at": message.edited_at,
        "deleted_at": message.deleted_at,
    }


def participant_record(participant: ConversationParticipant) -> Dict[str, Any]:
    return {
        "id": participant.id,
        "conversation_id": participant.conversation_id,
        "user_id": participant.user_id,
        "role": participant.role,
        "joined_at": participant.joined_at,
        "last_read_at": participant.last_read_at,
        "is_muted": participant.is_muted,
        "is_pinned": participant.is_pinned,
    }


async def publish_change(bus: Optional[RealtimeBus], table: str, event_type: str, record: Dict[str, Any], old: Optional[Dict[str, Any]] = None) -> int:
    if bus is None:
        return 0
    try:
        return await bus.publish(ChangeEvent(table=table, event_type=event_type, new=record, old=old))
    except Exception as e:
        # The write is committed; a lost notification only delays other clients
        logger.error(f"[ChatEvents] Failed to publish {table} {event_type}: {e}")
        return 0


async def notify_users(user_ids: Iterable[int], event_type: str, payload: Any):
    websocket_message = WebSocketMessage(type=event_type, payload=jsonable_encoder(payload))
    try:
        await manager.send_to_users(user_ids, websocket_message.model_dump_json())
    except Exception as e:
        logger.error(f"[ChatEvents] Failed to push {event_type}: {e}")


async def message_inserted(bus: Optional[RealtimeBus], message: Message, participant_ids: Iterable[int], payload: Any):
    await publish_change(bus, MESSAGES_TABLE, "INSERT", message_record(message))
    await notify_users(participant_ids, "new_message", payload)


async def message_updated(bus: Optional[RealtimeBus], message: Message, participant_ids: Iterable[int], payload: Any):
    await publish_change(bus, MESSAGES_TABLE, "UPDATE", message_record(message))
    await notify_users(participant_ids, "message_updated", payload)


async def participant_updated(bus: Optional[RealtimeBus], participant: ConversationParticipant):
    await publish_change(bus, PARTICIPANTS_TABLE, "UPDATE", participant_record(participant))
