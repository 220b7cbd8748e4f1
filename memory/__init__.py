from .conversation_log import ConversationLog
from .professional_directory import ProfessionalDirectory
from .session_store import HandoffSessionStore

__all__ = ["ConversationLog", "ProfessionalDirectory", "HandoffSessionStore"]
