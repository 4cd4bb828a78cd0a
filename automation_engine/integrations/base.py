"""Boundary contracts for the collaborators the engine consumes.

Messaging delivery, contact storage and AI completion are owned by other
services. The engine only depends on these interfaces and on the errors they
raise, which executors translate into transient or permanent node failures.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class CollaboratorError(Exception):
    """Base class for errors raised by external collaborators."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class DeliveryError(CollaboratorError):
    """The messaging gateway rejected or failed a send."""


class ContactNotFoundError(CollaboratorError):
    """The contact store has no contact with the requested id."""

    def __init__(self, contact_id: str):
        super().__init__(f"Contact '{contact_id}' not found", retryable=False)
        self.contact_id = contact_id


class ContactStoreUnavailableError(CollaboratorError):
    """The contact store could not be reached."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class AIProviderError(CollaboratorError):
    """The AI provider failed to produce a completion."""


class AIBudgetExceededError(AIProviderError):
    """The organization's AI budget or quota is exhausted."""

    def __init__(self, message: str = "AI budget exceeded"):
        super().__init__(message, retryable=False)


class Contact(BaseModel):
    """Read model of a contact as seen by executors."""
    id: str = Field(..., description="Contact ID")
    organization_id: Optional[str] = Field(None, description="Owning organization")
    first_name: Optional[str] = Field(None, description="First name")
    last_name: Optional[str] = Field(None, description="Last name")
    email: Optional[str] = Field(None, description="Email address")
    phone: Optional[str] = Field(None, description="Phone number used for messaging")
    tags: List[str] = Field(default_factory=list, description="Applied tags")
    custom_fields: Dict[str, Any] = Field(default_factory=dict, description="Custom field values")
    lists: List[str] = Field(default_factory=list, description="List memberships")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def attributes(self) -> Dict[str, Any]:
        """Flat mapping used for templating and condition lookups."""
        data = self.model_dump()
        data["name"] = self.full_name
        return data


class AICompletion(BaseModel):
    """Result of an AI completion."""
    text: str = Field(..., description="Completion text")
    usage: Dict[str, Any] = Field(default_factory=dict, description="Token usage reported by the provider")


class MessagingGateway(ABC):
    """Outbound messaging provider."""

    @abstractmethod
    def send(
        self,
        recipient: str,
        content: Optional[str] = None,
        template_ref: Optional[str] = None,
        template_variables: Optional[Dict[str, str]] = None,
        media_url: Optional[str] = None
    ) -> str:
        """Send a message and return the provider message id.

        Raises:
            DeliveryError: If the send failed; ``retryable`` tells whether to retry
        """


class ContactStore(ABC):
    """Contact, tag, field and list-membership storage."""

    @abstractmethod
    def get_contact(self, contact_id: str) -> Contact:
        """Raises ContactNotFoundError if the contact does not exist."""

    @abstractmethod
    def add_tag(self, contact_id: str, tag: str) -> None:
        pass

    @abstractmethod
    def remove_tag(self, contact_id: str, tag: str) -> None:
        pass

    @abstractmethod
    def set_field(self, contact_id: str, field_name: str, value: Any) -> None:
        pass

    @abstractmethod
    def clear_field(self, contact_id: str, field_name: str) -> None:
        pass

    @abstractmethod
    def add_to_list(self, contact_id: str, list_id: str) -> None:
        pass

    @abstractmethod
    def remove_from_list(self, contact_id: str, list_id: str) -> None:
        pass


class AIProvider(ABC):
    """Large language model adapter."""

    @abstractmethod
    def complete(self, prompt: str, model: str, max_tokens: int, temperature: float) -> AICompletion:
        """Return a completion.

        Raises:
            AIBudgetExceededError: If the organization is over its AI budget
            AIProviderError: For any other provider failure
        """
