from .base import Base
from .conversation import Conversation, ConversationParticipant
from .message import Message, MessageReaction
from .notification import Notification
from .profile import Profile

__all__ = [
    "Base",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageReaction",
    "Notification",
    "Profile",
]
