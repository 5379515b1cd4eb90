from dm_engine.models.message import (
    Attachment,
    AttachmentKind,
    Message,
    MessageDraft,
    Reaction,
)
from dm_engine.models.conversation import (
    Conversation,
    ConversationSummary,
    MessagePreview,
    Profile,
)

__all__ = [
    "Attachment",
    "AttachmentKind",
    "Message",
    "MessageDraft",
    "Reaction",
    "Conversation",
    "ConversationSummary",
    "MessagePreview",
    "Profile",
]
