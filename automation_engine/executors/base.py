"""Shared types for node executors.

Every executor is a plain function ``(config, ctx) -> NodeOutcome``. The
outcome says which edge handle to leave through and what to persist; the
execution engine owns every write to the enrollment.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from ..config import OrganizationPolicy
from ..core.error_recovery import ExternalCallRunner
from ..core.exceptions import PermanentExecutionError, TransientExecutionError
from ..core.templating import build_scope
from ..integrations.base import AIProvider, CollaboratorError, Contact, ContactStore, MessagingGateway
from ..models.core import DEFAULT_HANDLE, Enrollment, NodeDefinition, WaitCondition, Workflow
from ..models.graph import WorkflowGraph


@dataclass
class NodeOutcome:
    """What a node execution produced."""
    handle: str = DEFAULT_HANDLE
    delay_until: Optional[datetime] = None
    wait_condition: Optional[WaitCondition] = None
    context_updates: Dict[str, Any] = field(default_factory=dict)
    messages_sent: int = 0
    conversion: Optional[Dict[str, Any]] = None
    detail: Optional[str] = None

    @property
    def suspends(self) -> bool:
        """Whether the enrollment stays at the node waiting for an event."""
        return self.wait_condition is not None


class ExecutionContext:
    """Everything an executor may read or call during one node execution."""

    def __init__(
        self,
        enrollment: Enrollment,
        workflow: Workflow,
        node: NodeDefinition,
        graph: WorkflowGraph,
        policy: OrganizationPolicy,
        now: datetime,
        contact_store: ContactStore,
        messaging: MessagingGateway,
        runner: ExternalCallRunner,
        call_timeout: float,
        http: Optional[requests.Session] = None,
        ai_provider: Optional[AIProvider] = None
    ):
        self.enrollment = enrollment
        self.workflow = workflow
        self.node = node
        self.graph = graph
        self.policy = policy
        self.now = now
        self.contact_store = contact_store
        self.messaging = messaging
        self.runner = runner
        self.call_timeout = call_timeout
        self.http = http or requests.Session()
        self.ai_provider = ai_provider
        self._contact: Optional[Contact] = None

    @property
    def context(self) -> Dict[str, Any]:
        return self.enrollment.context

    def contact(self) -> Contact:
        """Load the enrolled contact once per node execution."""
        if self._contact is None:
            self._contact = self.call_external(
                self.contact_store.get_contact,
                "Contact store lookup",
                self.enrollment.contact_id
            )
        return self._contact

    def scope(self, with_contact: bool = True) -> Dict[str, Any]:
        """Template and condition variables for this execution."""
        return build_scope(self.contact() if with_contact else None, self.enrollment.context)

    def call_external(self, func: Callable, description: str, *args, **kwargs) -> Any:
        """Call a collaborator with the per-call timeout, translating its errors."""
        try:
            return self.runner.call(func, self.call_timeout, description, *args, **kwargs)
        except CollaboratorError as e:
            raise translate_collaborator_error(e, description, self)

    def error_context(self) -> Dict[str, Any]:
        return {"node_id": self.node.id, "enrollment_id": self.enrollment.id}


def translate_collaborator_error(error: CollaboratorError, description: str, ctx: ExecutionContext):
    """Map a collaborator failure onto the transient/permanent taxonomy."""
    message = f"{description} failed: {error.message}"
    if error.retryable:
        return TransientExecutionError(message, **ctx.error_context())
    return PermanentExecutionError(message, **ctx.error_context())
