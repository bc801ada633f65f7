from app.models.user import User
from app.models.collective import Collective, CollectiveMember
from app.models.conversation import Conversation
from app.models.conversation_participant import ConversationParticipant
from app.models.message import Message
from app.models.message_reaction import MessageReaction
