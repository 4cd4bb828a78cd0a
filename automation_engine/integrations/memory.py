"""In-process collaborator implementations for development and tests."""

import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.logging import get_logger
from .base import (
    AICompletion,
    AIProvider,
    Contact,
    ContactNotFoundError,
    ContactStore,
    MessagingGateway,
)

logger = get_logger(__name__)


class InMemoryContactStore(ContactStore):
    """Thread-safe contact store kept in a dict."""

    def __init__(self, contacts: Optional[List[Contact]] = None):
        self._contacts: Dict[str, Contact] = {}
        self._lock = threading.RLock()
        for contact in contacts or []:
            self.upsert_contact(contact)

    def upsert_contact(self, contact: Contact) -> Contact:
        with self._lock:
            self._contacts[contact.id] = contact.model_copy(deep=True)
            return self._contacts[contact.id].model_copy(deep=True)

    def get_contact(self, contact_id: str) -> Contact:
        with self._lock:
            contact = self._contacts.get(contact_id)
            if contact is None:
                raise ContactNotFoundError(contact_id)
            return contact.model_copy(deep=True)

    def _mutate(self, contact_id: str, mutation: Callable[[Contact], None]) -> None:
        with self._lock:
            contact = self._contacts.get(contact_id)
            if contact is None:
                raise ContactNotFoundError(contact_id)
            mutation(contact)

    def add_tag(self, contact_id: str, tag: str) -> None:
        def apply(contact: Contact):
            if tag not in contact.tags:
                contact.tags.append(tag)
        self._mutate(contact_id, apply)

    def remove_tag(self, contact_id: str, tag: str) -> None:
        def apply(contact: Contact):
            if tag in contact.tags:
                contact.tags.remove(tag)
        self._mutate(contact_id, apply)

    def set_field(self, contact_id: str, field_name: str, value: Any) -> None:
        self._mutate(contact_id, lambda contact: contact.custom_fields.__setitem__(field_name, value))

    def clear_field(self, contact_id: str, field_name: str) -> None:
        self._mutate(contact_id, lambda contact: contact.custom_fields.pop(field_name, None))

    def add_to_list(self, contact_id: str, list_id: str) -> None:
        def apply(contact: Contact):
            if list_id not in contact.lists:
                contact.lists.append(list_id)
        self._mutate(contact_id, apply)

    def remove_from_list(self, contact_id: str, list_id: str) -> None:
        def apply(contact: Contact):
            if list_id in contact.lists:
                contact.lists.remove(list_id)
        self._mutate(contact_id, apply)


class RecordingMessagingGateway(MessagingGateway):
    """Gateway that records every send instead of delivering it.

    ``failures`` is consumed one entry per send; an exception entry is raised
    instead of recording the message.
    """

    def __init__(self, failures: Optional[List[Exception]] = None):
        self.sent: List[Dict[str, Any]] = []
        self.failures: List[Exception] = list(failures or [])
        self._lock = threading.Lock()

    def send(
        self,
        recipient: str,
        content: Optional[str] = None,
        template_ref: Optional[str] = None,
        template_variables: Optional[Dict[str, str]] = None,
        media_url: Optional[str] = None
    ) -> str:
        with self._lock:
            if self.failures:
                raise self.failures.pop(0)
            message_id = f"msg_{uuid.uuid4().hex[:12]}"
            self.sent.append({
                "message_id": message_id,
                "recipient": recipient,
                "content": content,
                "template_ref": template_ref,
                "template_variables": dict(template_variables or {}),
                "media_url": media_url,
                "sent_at": datetime.utcnow(),
            })
        logger.debug(f"Recorded message {message_id} to {recipient}")
        return message_id

    def contents(self) -> List[Optional[str]]:
        return [message["content"] for message in self.sent]


class ScriptedAIProvider(AIProvider):
    """AI provider returning canned completions.

    Responses are taken from ``responses`` in order; an exception entry is
    raised. When the script runs out ``default_text`` is returned.
    """

    def __init__(self, responses: Optional[List[Any]] = None, default_text: str = "neutral"):
        self.responses: List[Any] = list(responses or [])
        self.default_text = default_text
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def complete(self, prompt: str, model: str, max_tokens: int, temperature: float) -> AICompletion:
        with self._lock:
            self.calls.append({
                "prompt": prompt,
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
            })
            response = self.responses.pop(0) if self.responses else self.default_text
        if isinstance(response, Exception):
            raise response
        if isinstance(response, AICompletion):
            return response
        text = str(response)
        return AICompletion(
            text=text,
            usage={"prompt_tokens": len(prompt.split()), "completion_tokens": len(text.split())}
        )
