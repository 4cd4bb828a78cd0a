"""External collaborator contracts and in-process implementations."""

from .base import (
    AICompletion,
    AIBudgetExceededError,
    AIProvider,
    AIProviderError,
    CollaboratorError,
    Contact,
    ContactNotFoundError,
    ContactStore,
    ContactStoreUnavailableError,
    DeliveryError,
    MessagingGateway,
)
from .memory import InMemoryContactStore, RecordingMessagingGateway, ScriptedAIProvider

__all__ = [
    "AICompletion",
    "AIBudgetExceededError",
    "AIProvider",
    "AIProviderError",
    "CollaboratorError",
    "Contact",
    "ContactNotFoundError",
    "ContactStore",
    "ContactStoreUnavailableError",
    "DeliveryError",
    "MessagingGateway",
    "InMemoryContactStore",
    "RecordingMessagingGateway",
    "ScriptedAIProvider",
]
