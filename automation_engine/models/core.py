"""Core Pydantic models for the automation engine."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class NodeType(str, Enum):
    """Enumeration of node variants."""
    TRIGGER = "trigger"
    MESSAGE = "message"
    DELAY = "delay"
    CONDITION = "condition"
    ACTION = "action"
    WAIT_UNTIL = "wait_until"
    SPLIT = "split"
    WEBHOOK = "webhook"
    AI = "ai"
    GOAL = "goal"


class EnrollmentStatus(str, Enum):
    """Enumeration of enrollment statuses."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    DROPPED = "dropped"
    OPTED_OUT = "opted_out"

    @property
    def is_terminal(self) -> bool:
        return self in (EnrollmentStatus.COMPLETED, EnrollmentStatus.DROPPED, EnrollmentStatus.OPTED_OUT)


LIVE_STATUSES = (EnrollmentStatus.ACTIVE.value, EnrollmentStatus.PAUSED.value)


class LogOutcome(str, Enum):
    """Outcome of a single node execution attempt."""
    SUCCESS = "success"
    RETRIED = "retried"
    FAILED = "failed"


class Severity(str, Enum):
    """Severity of a validation issue."""
    ERROR = "error"
    WARNING = "warning"


class TriggerType(str, Enum):
    """External events that can start or wake an enrollment."""
    CONTACT_CREATED = "contact_created"
    TAG_ADDED = "tag_added"
    WEBHOOK_RECEIVED = "webhook_received"
    SCHEDULED = "scheduled"
    MESSAGE_RECEIVED = "message_received"
    FIELD_CHANGED = "field_changed"


# Edge handles with a fixed meaning; split branches use their branch id.
DEFAULT_HANDLE = "default"
TRUE_HANDLE = "true"
FALSE_HANDLE = "false"
TIMEOUT_HANDLE = "timeout"
ERROR_HANDLE = "error"

NODE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


class BusinessHours(BaseModel):
    """Business hours window used when rolling delays forward."""
    start_hour: int = Field(default=9, ge=0, le=23, description="First business hour (inclusive)")
    end_hour: int = Field(default=17, ge=1, le=24, description="Last business hour (exclusive)")
    business_days: List[int] = Field(
        default_factory=lambda: [0, 1, 2, 3, 4],
        description="Business weekdays, Monday=0"
    )
    timezone: str = Field(default="UTC", description="IANA timezone name")

    @model_validator(mode='after')
    def validate_window(self):
        """Ensure the window is non-empty."""
        if self.start_hour >= self.end_hour:
            raise ValueError("Business hours start must be before end")
        if not self.business_days:
            raise ValueError("At least one business day is required")
        for day in self.business_days:
            if not 0 <= day <= 6:
                raise ValueError(f"Invalid weekday: {day}")
        return self


class WorkflowSettings(BaseModel):
    """Per-workflow runtime policy."""
    stop_on_reply: bool = Field(default=True, description="Stop enrollments when the contact replies")
    allow_reentry: bool = Field(default=True, description="Allow a contact to enroll again after finishing")
    timezone: Optional[str] = Field(None, description="Timezone override for business hours")
    business_hours: Optional[BusinessHours] = Field(None, description="Business hours override")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Node variant")
    name: Optional[str] = Field(None, description="Display name")
    config: Dict[str, Any] = Field(default_factory=dict, description="Variant specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not NODE_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()


class EdgeDefinition(BaseModel):
    """Directed connection between two nodes."""
    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: str = Field(default=DEFAULT_HANDLE, description="Output handle on the source node")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('source_handle')
    @classmethod
    def validate_handle(cls, handle):
        if handle is None or not str(handle).strip():
            return DEFAULT_HANDLE
        return str(handle).strip()


class WorkflowDefinition(BaseModel):
    """Complete editable definition of a workflow graph."""
    name: str = Field(..., description="Name of the workflow")
    description: str = Field(default="", description="Description of the workflow")
    nodes: List[NodeDefinition] = Field(default_factory=list, description="Ordered list of nodes")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes")
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings, description="Runtime settings")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]


class Workflow(BaseModel):
    """Stored workflow with lifecycle metadata."""
    id: str = Field(..., description="Workflow ID")
    organization_id: str = Field(..., description="Owning organization")
    status: WorkflowStatus = Field(..., description="Lifecycle status")
    version: int = Field(default=0, description="Published version, 0 while never published")
    definition: WorkflowDefinition = Field(..., description="Current graph definition")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")
    published_at: Optional[datetime] = Field(None, description="Last publish timestamp")

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def settings(self) -> WorkflowSettings:
        return self.definition.settings

    def trigger_node(self) -> Optional[NodeDefinition]:
        for node in self.definition.nodes:
            if node.type == NodeType.TRIGGER:
                return node
        return None


class WaitCondition(BaseModel):
    """Event an enrollment is suspended on."""
    event_type: str = Field(..., description="Awaited event type")
    node_id: str = Field(..., description="WaitUntil node that suspended the enrollment")
    tag: Optional[str] = Field(None, description="Awaited tag for tag_applied")
    field_name: Optional[str] = Field(None, description="Awaited field for field_changed")
    field_value: Optional[Any] = Field(None, description="Expected field value, any value if unset")
    webhook_key: Optional[str] = Field(None, description="Awaited inbound webhook key")
    wake_at: Optional[datetime] = Field(None, description="Specific date to resume at")
    timeout_at: Optional[datetime] = Field(None, description="Timeout fallback instant")
    matched: bool = Field(default=False, description="Whether the awaited event arrived")
    matched_at: Optional[datetime] = Field(None, description="When the awaited event arrived")


class Enrollment(BaseModel):
    """Snapshot of a contact's journey through a workflow."""
    id: str = Field(..., description="Enrollment ID")
    workflow_id: str = Field(..., description="Owning workflow")
    organization_id: str = Field(..., description="Owning organization")
    contact_id: str = Field(..., description="Enrolled contact")
    status: EnrollmentStatus = Field(..., description="Current status")
    current_node_id: str = Field(..., description="Node the enrollment is positioned at")
    next_action_at: Optional[datetime] = Field(None, description="When the enrollment is next due")
    context: Dict[str, Any] = Field(default_factory=dict, description="Enrollment variables")
    lease_holder: Optional[str] = Field(None, description="Worker currently holding the lease")
    lease_expires_at: Optional[datetime] = Field(None, description="Lease expiry")
    attempt: int = Field(default=0, description="Failed attempts at the current node")
    wait_condition: Optional[WaitCondition] = Field(None, description="Awaited event while suspended")
    drop_reason: Optional[str] = Field(None, description="Human readable reason for dropping")
    messages_sent: int = Field(default=0, description="Messages sent on this journey")
    source: str = Field(default="manual", description="What created the enrollment")
    enrolled_at: datetime = Field(..., description="Enrollment timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")
    completed_at: Optional[datetime] = Field(None, description="When the enrollment reached a terminal status")


class EnrollmentResult(BaseModel):
    """Result of an enroll request."""
    contact_id: str = Field(..., description="Contact the request was for")
    enrolled: bool = Field(..., description="Whether a new enrollment was created")
    enrollment: Optional[Enrollment] = Field(None, description="The new enrollment")
    reason: Optional[str] = Field(None, description="Why the request was skipped")

    @property
    def skipped(self) -> bool:
        return not self.enrolled


class ValidationIssue(BaseModel):
    """A single finding of the validation engine."""
    severity: Severity = Field(..., description="error or warning")
    node_id: Optional[str] = Field(None, description="Offending node")
    edge_id: Optional[str] = Field(None, description="Offending edge")
    message: str = Field(..., description="Human readable description")
    path: List[str] = Field(default_factory=list, description="Cycle path for cycle errors")


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow has no errors")
    issues: List[ValidationIssue] = Field(default_factory=list, description="Ordered findings")

    @property
    def errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.WARNING]


class ExecutionLogEntry(BaseModel):
    """Append-only record of one node execution attempt."""
    id: int = Field(..., description="Log entry ID")
    enrollment_id: str = Field(..., description="Enrollment that executed the node")
    workflow_id: str = Field(..., description="Owning workflow")
    node_id: str = Field(..., description="Executed node")
    node_type: str = Field(..., description="Executed node variant")
    timestamp: datetime = Field(..., description="When the attempt finished")
    outcome: LogOutcome = Field(..., description="success, retried or failed")
    attempt: int = Field(default=0, description="Attempt number, zero based")
    handle: Optional[str] = Field(None, description="Edge handle taken on success")
    detail: Optional[str] = Field(None, description="Human readable detail")


class ContactEvent(BaseModel):
    """Inbound event delivered by an external collaborator."""
    type: TriggerType = Field(..., description="Event type")
    organization_id: str = Field(..., description="Organization the event belongs to")
    contact_id: Optional[str] = Field(None, description="Contact the event is about")
    tag: Optional[str] = Field(None, description="Applied tag for tag_added")
    field_name: Optional[str] = Field(None, description="Changed field for field_changed")
    field_value: Optional[Any] = Field(None, description="New value for field_changed")
    message_text: Optional[str] = Field(None, description="Inbound message body for message_received")
    webhook_key: Optional[str] = Field(None, description="Inbound webhook key for webhook_received")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Extra event data")
    workflow_id: Optional[str] = Field(None, description="Target workflow for scheduled events")
    contact_ids: List[str] = Field(default_factory=list, description="Contacts for scheduled events")
    occurred_at: Optional[datetime] = Field(None, description="When the event happened")

    @model_validator(mode='after')
    def validate_contact(self):
        """Every event except scheduled needs a contact."""
        if self.type == TriggerType.SCHEDULED:
            if not self.workflow_id:
                raise ValueError("Scheduled events require a workflow_id")
        elif not self.contact_id:
            raise ValueError(f"{self.type.value} events require a contact_id")
        return self


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
