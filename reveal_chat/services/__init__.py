from reveal_chat.services.animation_service import MessageAnimation
from reveal_chat.services.error_service import MessageErrorHandler
from reveal_chat.services.model_selection import ModelSelectionService
from reveal_chat.services.model_service import ModelClient, ModelService
from reveal_chat.services.orchestrator import MessageOrchestrator
from reveal_chat.services.persistence_service import MessagePersistence

__all__ = [
    "MessageAnimation",
    "MessageErrorHandler",
    "MessageOrchestrator",
    "MessagePersistence",
    "ModelClient",
    "ModelSelectionService",
    "ModelService",
]
