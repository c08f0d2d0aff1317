from underleaf.assistant.auth import AuthStatus, AuthWizard
from underleaf.assistant.bridge import AssistantBridge, ConversationStore

__all__ = ["AssistantBridge", "AuthStatus", "AuthWizard", "ConversationStore"]
