from dm_engine.engine.directory import ConversationDirectory
from dm_engine.engine.presence import PresenceTracker
from dm_engine.engine.router import RealtimeRouter
from dm_engine.engine.session import MessagingSession, SessionState
from dm_engine.engine.store import MessageStore, SendOutcome, SendStatus

__all__ = [
    "ConversationDirectory",
    "PresenceTracker",
    "RealtimeRouter",
    "MessagingSession",
    "SessionState",
    "MessageStore",
    "SendOutcome",
    "SendStatus",
]
