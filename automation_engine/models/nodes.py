"""Per-variant node configuration models.

A node is stored as ``NodeDefinition(type, config)`` where ``config`` is a raw
mapping. ``parse_node_config`` turns that mapping into the typed model for the
node's variant, so executors and the validation engine never inspect raw dicts.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .core import NodeDefinition, NodeType, TriggerType, as_naive_utc


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class ActionType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    SET_FIELD = "set_field"
    CLEAR_FIELD = "clear_field"
    ADD_TO_LIST = "add_to_list"
    REMOVE_FROM_LIST = "remove_from_list"


class WaitEventType(str, Enum):
    TAG_APPLIED = "tag_applied"
    FIELD_CHANGED = "field_changed"
    MESSAGE_RECEIVED = "message_received"
    SPECIFIC_DATE = "specific_date"
    WEBHOOK_RECEIVED = "webhook_received"


class AuthType(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api_key"


class AIAction(str, Enum):
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    CATEGORIZE = "categorize"
    EXTRACT_INFO = "extract_info"
    GENERATE_RESPONSE = "generate_response"
    TRANSLATE = "translate"


class GoalType(str, Enum):
    CONVERSION = "conversion"
    ENGAGEMENT = "engagement"
    REVENUE = "revenue"
    CUSTOM = "custom"


ALLOWED_OPERATORS = frozenset([
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
])


class TriggerConfig(BaseModel):
    """Entry point configuration."""
    trigger_type: TriggerType = Field(..., description="Event that enrolls contacts")
    tag: Optional[str] = Field(None, description="Tag filter for tag_added, any tag if unset")
    field_name: Optional[str] = Field(None, description="Field filter for field_changed")
    field_value: Optional[Any] = Field(None, description="Value filter for field_changed")
    webhook_key: Optional[str] = Field(None, description="Inbound webhook key for webhook_received")
    keyword: Optional[str] = Field(None, description="Keyword filter for message_received")


class MessageConfig(BaseModel):
    """Outbound message configuration."""
    content: Optional[str] = Field(None, description="Message body with {{placeholders}}")
    template_ref: Optional[str] = Field(None, description="Provider template reference")
    template_variables: Dict[str, str] = Field(default_factory=dict, description="Template variable templates")
    media_url: Optional[str] = Field(None, description="Optional media attachment")

    @model_validator(mode='after')
    def validate_body(self):
        if not (self.content and self.content.strip()) and not self.template_ref:
            raise ValueError("Message requires content or a template reference")
        return self


class DelayConfig(BaseModel):
    """Timed delay configuration."""
    amount: int = Field(..., ge=0, description="Delay amount")
    unit: DelayUnit = Field(default=DelayUnit.MINUTES, description="Delay unit")
    business_hours_only: bool = Field(default=False, description="Roll forward into business hours")
    skip_weekends: bool = Field(default=False, description="Roll forward past non-business days")


class ConditionRule(BaseModel):
    """Atomic comparison."""
    field: str = Field(..., description="Field reference, e.g. context.replied or contact.email")
    operator: str = Field(..., description="Comparison operator")
    value: Optional[Any] = Field(None, description="Comparison operand")


class ConditionGroup(BaseModel):
    """AND/OR combination of rules and nested groups."""
    model_config = ConfigDict(extra="forbid")

    combinator: Literal["and", "or"] = Field(default="and", description="How children combine")
    conditions: List[Union["ConditionGroup", ConditionRule]] = Field(..., description="Child rules and groups")

    @field_validator('combinator', mode='before')
    @classmethod
    def normalize_combinator(cls, value):
        return str(value).lower() if value is not None else "and"


ConditionGroup.model_rebuild()


class ConditionConfig(BaseModel):
    """Boolean branch configuration."""
    expression: ConditionGroup = Field(..., description="Expression tree")


class ActionConfig(BaseModel):
    """Contact mutation configuration."""
    action_type: ActionType = Field(..., description="Mutation to apply")
    tag: Optional[str] = Field(None, description="Tag for tag actions")
    field_name: Optional[str] = Field(None, description="Custom field for field actions")
    field_value: Optional[Any] = Field(None, description="Value for set_field, may be a template")
    list_id: Optional[str] = Field(None, description="List for list actions")

    @model_validator(mode='after')
    def validate_operand(self):
        if self.action_type in (ActionType.ADD_TAG, ActionType.REMOVE_TAG) and not self.tag:
            raise ValueError(f"{self.action_type.value} requires a tag")
        if self.action_type in (ActionType.SET_FIELD, ActionType.CLEAR_FIELD) and not self.field_name:
            raise ValueError(f"{self.action_type.value} requires a field_name")
        if self.action_type in (ActionType.ADD_TO_LIST, ActionType.REMOVE_FROM_LIST) and not self.list_id:
            raise ValueError(f"{self.action_type.value} requires a list_id")
        return self


class WaitUntilConfig(BaseModel):
    """Event suspension configuration."""
    event_type: WaitEventType = Field(default=WaitEventType.TAG_APPLIED, description="Awaited event")
    tag: Optional[str] = Field(None, description="Tag for tag_applied")
    field_name: Optional[str] = Field(None, description="Field for field_changed")
    field_value: Optional[Any] = Field(None, description="Expected value for field_changed")
    webhook_key: Optional[str] = Field(None, description="Key for webhook_received")
    date: Optional[datetime] = Field(None, description="Instant for specific_date, UTC")
    timeout_enabled: bool = Field(default=False, description="Resume along the timeout edge")
    timeout_amount: Optional[int] = Field(None, ge=1, description="Timeout amount")
    timeout_unit: DelayUnit = Field(default=DelayUnit.DAYS, description="Timeout unit")

    @field_validator('date')
    @classmethod
    def normalize_date(cls, value):
        return as_naive_utc(value)

    @model_validator(mode='after')
    def validate_event(self):
        if self.event_type == WaitEventType.TAG_APPLIED and not self.tag:
            raise ValueError("tag_applied wait requires a tag")
        if self.event_type == WaitEventType.FIELD_CHANGED and not self.field_name:
            raise ValueError("field_changed wait requires a field_name")
        if self.event_type == WaitEventType.SPECIFIC_DATE and self.date is None:
            raise ValueError("specific_date wait requires a date")
        if self.timeout_enabled and not self.timeout_amount:
            raise ValueError("Timeout requires a timeout_amount")
        return self


class SplitBranch(BaseModel):
    """One outcome of a split."""
    id: str = Field(..., description="Branch id, also the edge source handle")
    label: Optional[str] = Field(None, description="Display label")
    percentage: Optional[float] = Field(None, description="Share of traffic in percentage mode")
    value: Optional[Any] = Field(None, description="Matched value in field mode")


class SplitConfig(BaseModel):
    """A/B or field based split configuration."""
    split_type: Literal["percentage", "field"] = Field(default="percentage", description="Split mode")
    branches: List[SplitBranch] = Field(..., min_length=1, description="Possible branches")
    field: Optional[str] = Field(None, description="Field reference for field mode")
    default_branch: Optional[str] = Field(None, description="Branch for unmatched values in field mode")

    @field_validator('branches')
    @classmethod
    def validate_unique_branches(cls, branches):
        ids = [branch.id for branch in branches]
        if len(ids) != len(set(ids)):
            raise ValueError("Branch ids must be unique")
        return branches


class WebhookConfig(BaseModel):
    """Outbound HTTP call configuration."""
    url: str = Field(..., description="Target URL, may contain placeholders")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = Field(default="POST", description="HTTP method")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra headers")
    body: Optional[str] = Field(None, description="Body template")
    auth_type: AuthType = Field(default=AuthType.NONE, description="Authentication scheme")
    auth_token: Optional[str] = Field(None, description="Bearer token")
    auth_username: Optional[str] = Field(None, description="Basic auth username")
    auth_password: Optional[str] = Field(None, description="Basic auth password")
    api_key_header: str = Field(default="X-API-Key", description="Header carrying the API key")
    api_key: Optional[str] = Field(None, description="API key value")
    save_response: bool = Field(default=True, description="Store the response in context")
    response_variable: Optional[str] = Field(None, description="Context variable for the response")

    @field_validator('method', mode='before')
    @classmethod
    def normalize_method(cls, value):
        return str(value).upper() if value else "POST"

    @field_validator('auth_type', mode='before')
    @classmethod
    def normalize_auth_type(cls, value):
        return str(value).lower().replace("-", "_") if value else AuthType.NONE.value


class AIConfig(BaseModel):
    """AI provider call configuration."""
    action: AIAction = Field(default=AIAction.SENTIMENT_ANALYSIS, description="What to ask the model")
    model: str = Field(default="gpt-3.5-turbo", description="Model identifier")
    prompt: str = Field(default="", description="Prompt template with {{placeholders}}")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: int = Field(default=500, ge=1, description="Completion token limit")
    categories: List[str] = Field(default_factory=list, description="Candidate categories for categorize")
    extraction_fields: List[str] = Field(default_factory=list, description="Fields for extract_info")
    source_language: Optional[str] = Field(None, description="Source language for translate")
    target_language: Optional[str] = Field(None, description="Target language for translate")
    result_variable: Optional[str] = Field(None, description="Context variable for the result")


class GoalConfig(BaseModel):
    """Conversion marker configuration."""
    goal_name: str = Field(..., min_length=1, description="Goal name")
    goal_type: GoalType = Field(default=GoalType.CONVERSION, description="Goal kind")
    revenue_amount: Optional[float] = Field(None, ge=0, description="Revenue attributed to the goal")
    currency: str = Field(default="USD", description="Revenue currency")
    track_in_analytics: bool = Field(default=True, description="Record a conversion event")

    @model_validator(mode='after')
    def validate_revenue(self):
        if self.goal_type == GoalType.REVENUE and self.revenue_amount is None:
            raise ValueError("Revenue goals require a revenue_amount")
        return self


NodeConfig = Union[
    TriggerConfig, MessageConfig, DelayConfig, ConditionConfig, ActionConfig,
    WaitUntilConfig, SplitConfig, WebhookConfig, AIConfig, GoalConfig,
]

CONFIG_MODELS: Dict[NodeType, Type[BaseModel]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.MESSAGE: MessageConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.ACTION: ActionConfig,
    NodeType.WAIT_UNTIL: WaitUntilConfig,
    NodeType.SPLIT: SplitConfig,
    NodeType.WEBHOOK: WebhookConfig,
    NodeType.AI: AIConfig,
    NodeType.GOAL: GoalConfig,
}


def parse_node_config(node: NodeDefinition) -> NodeConfig:
    """Parse a node's raw config into its variant model.

    Raises:
        pydantic.ValidationError: If the config does not fit the variant
    """
    return CONFIG_MODELS[node.type].model_validate(node.config)
