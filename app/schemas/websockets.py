from pydantic import BaseModel
from typing import Any, Literal

# Frames pushed by /ws/chat
ServerFrameType = Literal[
    "unread_update",
    "new_message",
    "message_updated",
    "reaction_added",
    "reaction_removed",
    "typing_start",
    "typing_stop",
    "user_join",
    "user_leave",
    "error",
]

class WebSocketMessage(BaseModel):
    type: ServerFrameType
    payload: Any = None
