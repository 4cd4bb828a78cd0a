"""Condition executor."""

from ..core.conditions import evaluate_condition
from ..models.core import FALSE_HANDLE, TRUE_HANDLE
from ..models.nodes import ConditionConfig
from .base import ExecutionContext, NodeOutcome


def execute_condition(config: ConditionConfig, ctx: ExecutionContext) -> NodeOutcome:
    """Route along the true or false edge; pure given the contact snapshot."""
    result = evaluate_condition(config.expression, ctx.contact(), ctx.context)
    handle = TRUE_HANDLE if result else FALSE_HANDLE
    return NodeOutcome(
        handle=handle,
        context_updates={f"condition_{ctx.node.id}": result},
        detail=f"evaluated to {handle}"
    )
