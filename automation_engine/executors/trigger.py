"""Trigger executor."""

from ..models.nodes import TriggerConfig
from .base import ExecutionContext, NodeOutcome


def execute_trigger(config: TriggerConfig, ctx: ExecutionContext) -> NodeOutcome:
    """Entry point: nothing to do but leave along the default edge."""
    return NodeOutcome(detail=f"entered via {config.trigger_type.value}")
